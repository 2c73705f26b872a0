import time
from dataclasses import dataclass, field
from enum import Enum


class Phase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"


class ProbeKind(str, Enum):
    READINESS = "readiness"
    LIVENESS = "liveness"


class RolloutPhase(str, Enum):
    PLANNING = "Planning"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


# Failure reasons carried by ProbeResult.reason
PROBE_TIMEOUT = "timeout"
PROBE_UNREACHABLE = "unreachable"


@dataclass
class HealthCounters:
    successes: int = 0
    failures: int = 0


@dataclass
class Instance:
    instance_id: str
    version: str
    group: str
    created_at: float = field(default_factory=time.time)
    phase: Phase = Phase.PENDING
    ready: bool = False
    alive: bool = False
    host: str = "127.0.0.1"
    port: int = None
    readiness: HealthCounters = field(default_factory=HealthCounters)
    liveness: HealthCounters = field(default_factory=HealthCounters)

    def counters(self, kind):
        return self.readiness if kind == ProbeKind.READINESS else self.liveness

    @property
    def live(self):
        """Still counts towards the group (anything not yet Terminated)"""
        return self.phase != Phase.TERMINATED

    @property
    def available(self):
        return self.ready and self.phase == Phase.RUNNING


@dataclass
class InstanceSpec:
    """What the instance manager is asked to create"""
    service: str
    version: str
    group: str
    secrets: dict = field(default_factory=dict, repr=False)  # opaque, never inspected


@dataclass
class ProbeResult:
    instance_id: str
    kind: ProbeKind
    success: bool
    latency_s: float = 0.0
    reason: str = None  # "timeout", "unreachable", "http_503", ...
    timestamp: float = field(default_factory=time.time)


@dataclass
class ProbeConfig:
    """Where and how an instance is health checked"""
    path: str = "/healthz"
    scheme: str = "http"
    timeout_s: float = 1.0


@dataclass
class HealthPolicy:
    """Hysteresis thresholds and probe schedule for one probe kind"""
    success_threshold: int = 1
    failure_threshold: int = 3
    period_s: float = 10.0
    initial_delay_s: float = 0.0
    path: str = None  # falls back to ProbeConfig.path

    def __post_init__(self):
        if self.success_threshold < 1 or self.failure_threshold < 1:
            raise ValueError("health thresholds must be >= 1")
        if self.period_s <= 0:
            raise ValueError("probe period must be > 0")


@dataclass
class RetryPolicy:
    max_attempts: int = 3  # retries after the first attempt
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0

    def backoff(self, attempt):
        return min((2 ** (attempt - 1)) * self.base_delay_s, self.max_delay_s)


@dataclass
class Counts:
    """Per-tick rollout arithmetic for one group"""
    available_old: int = 0
    available_new: int = 0
    total_old: int = 0
    total_new: int = 0

    @property
    def available(self):
        return self.available_old + self.available_new

    @property
    def total(self):
        return self.total_old + self.total_new


@dataclass
class RolloutPlan:
    plan_id: str
    service: str
    group: str
    new_version: str
    replicas: int
    max_unavailable: int
    max_surge: int
    phase: RolloutPhase = RolloutPhase.PLANNING
    aborted_reason: str = None
    error: Exception = field(default=None, repr=False)
    created: list = field(default_factory=list)  # instance IDs created by this plan
    terminated: list = field(default_factory=list)  # instance IDs terminated by this plan
    history: list = field(default_factory=list)
    per_instance_history: dict = field(default_factory=dict)

    @property
    def active(self):
        return self.phase in (RolloutPhase.PLANNING, RolloutPhase.IN_PROGRESS)

    def record(self, event, **details):
        entry = {"event": event, **details}
        self.history.append(entry)
        instance_id = details.get("instance_id")
        if instance_id is not None:
            self.per_instance_history.setdefault(instance_id, []).append(entry)


@dataclass(frozen=True)
class AdmissionSnapshot:
    """Immutable view of the traffic-eligible instances at one store revision"""
    revision: int
    group: str
    members: frozenset = frozenset()

    def __len__(self):
        return len(self.members)

    def __contains__(self, instance_id):
        return instance_id in self.members


@dataclass
class ServiceStatus:
    service: str
    active_group: str
    rollout_phase: RolloutPhase = None
    ready_count: int = 0
    total_count: int = 0
    plan_id: str = None
