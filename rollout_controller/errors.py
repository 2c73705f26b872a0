class ControllerError(Exception):
    """Base class for errors returned to control plane callers"""


class RolloutConflict(ControllerError):
    def __init__(self, service, plan_id):
        self.service = service
        self.plan_id = plan_id
        super().__init__(f"rollout {plan_id} already in progress for service {service}")


class NoHealthyTarget(ControllerError):
    def __init__(self, service, group):
        self.service = service
        self.group = group
        super().__init__(f"group {group!r} of service {service} has no ready instances")


class UnknownService(ControllerError):
    def __init__(self, service):
        self.service = service
        super().__init__(f"unknown service {service!r}")


class UnknownRollout(ControllerError):
    def __init__(self, plan_id):
        self.plan_id = plan_id
        super().__init__(f"unknown rollout plan {plan_id!r}")


class InstanceManagerUnavailable(ControllerError):
    """Instance manager commands kept failing after all retries"""

    reason = "InstanceManagerUnavailable"

    def __init__(self, command, attempts, last_error=None):
        self.command = command
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{command} failed after {attempts} attempts: {last_error}")
