from .models import (
    Phase, ProbeKind, RolloutPhase, Instance, InstanceSpec, ProbeResult, ProbeConfig,
    HealthPolicy, RetryPolicy, RolloutPlan, AdmissionSnapshot, ServiceStatus
)
from .errors import (
    ControllerError, RolloutConflict, NoHealthyTarget, UnknownService, UnknownRollout,
    InstanceManagerUnavailable
)
from .config import ServiceConfig, load_service_config
from .store import InstanceStore
from .health import InstanceHealthTracker
from .probe import ProbeExecutor
from .engine import RolloutEngine
from .switch import TrafficSwitchController
from .instance_manager import InstanceManager, SimulatedInstanceManager
from .failure import FailureInjector
from .controller import ServiceController, ControlPlane

__all__ = [
    "Phase", "ProbeKind", "RolloutPhase", "Instance", "InstanceSpec", "ProbeResult",
    "ProbeConfig", "HealthPolicy", "RetryPolicy", "RolloutPlan", "AdmissionSnapshot",
    "ServiceStatus",
    "ControllerError", "RolloutConflict", "NoHealthyTarget", "UnknownService",
    "UnknownRollout", "InstanceManagerUnavailable",
    "ServiceConfig", "load_service_config",
    "InstanceStore", "InstanceHealthTracker", "ProbeExecutor", "RolloutEngine",
    "TrafficSwitchController", "InstanceManager", "SimulatedInstanceManager",
    "FailureInjector", "ServiceController", "ControlPlane"
]
