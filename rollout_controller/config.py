import json
from dataclasses import dataclass, field

from .models import HealthPolicy, ProbeConfig, RetryPolicy


@dataclass
class ServiceConfig:
    """Everything the controller needs to know about one service"""
    name: str
    active_group: str = "blue"
    replicas: int = None  # None: keep whatever the group currently runs
    max_unavailable: int = 0
    max_surge: int = 1
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    readiness: HealthPolicy = field(default_factory=lambda: HealthPolicy(period_s=1.0))
    liveness: HealthPolicy = field(default_factory=lambda: HealthPolicy(period_s=10.0, initial_delay_s=5.0))
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    secrets: dict = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if not self.name:
            raise ValueError("service name must not be empty")
        if self.replicas is not None and self.replicas < 0:
            raise ValueError("replicas must be >= 0")
        if self.max_unavailable < 0 or self.max_surge < 0:
            raise ValueError("max_unavailable and max_surge must be >= 0")
        if self.retry.max_attempts < 0:
            raise ValueError("retry max_attempts must be >= 0")


def service_config_from_dict(data):
    data = dict(data)
    nested = {"probe": ProbeConfig, "readiness": HealthPolicy, "liveness": HealthPolicy, "retry": RetryPolicy}
    try:
        for key, cls in nested.items():
            if isinstance(data.get(key), dict):
                data[key] = cls(**data[key])
        return ServiceConfig(**data)
    except TypeError as e:
        raise ValueError(f"invalid service config: {e}") from e


def load_service_config(path):
    with open(path) as f:
        return service_config_from_dict(json.load(f))
