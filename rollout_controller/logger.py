import logging

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def setup_logging(level="INFO"):
    """Configure root logging once for the controller and its CLI."""
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO),
                        format=LOG_FORMAT)


def get_logger(name="rollout_controller"):
    if not name.startswith("rollout_controller"):
        name = f"rollout_controller.{name}"
    return logging.getLogger(name)
