from .models import HealthPolicy, Phase, ProbeKind
from .logger import get_logger

DEFAULT_READINESS = HealthPolicy(success_threshold=1, failure_threshold=3, period_s=1.0)
DEFAULT_LIVENESS = HealthPolicy(success_threshold=1, failure_threshold=3, period_s=10.0, initial_delay_s=5.0)


class InstanceHealthTracker:
    """Turns probe results into Ready/Alive flags with hysteresis.

    Each probe kind keeps its own pair of consecutive counters on the
    instance. A success clears the failure streak and a failure clears the
    success streak; a flag only flips once its streak reaches the policy's
    threshold. Both flags start out false.

    A liveness failure streak reaching the threshold marks the instance dead:
    Ready is forced false in the same revision and the store emits a "dead"
    event for whoever replaces instances.
    """

    def __init__(self, store, readiness=None, liveness=None):
        self.store = store
        self.policies = {
            ProbeKind.READINESS: readiness or DEFAULT_READINESS,
            ProbeKind.LIVENESS: liveness or DEFAULT_LIVENESS,
        }
        self.logger = get_logger(f"health.{store.service}")

    def policy(self, kind):
        return self.policies[ProbeKind(kind)]

    def record(self, result):
        """Apply one probe result. Returns the store event kind it caused, if any."""
        kind = ProbeKind(result.kind)
        instance = self.store.get(result.instance_id)
        if instance is None or instance.phase in (Phase.TERMINATING, Phase.TERMINATED):
            self.logger.debug(f"Ignoring {kind.value} result for {result.instance_id}")
            return None

        policy = self.policies[kind]
        counters = instance.counters(kind)
        changed = False
        dead = False

        if result.success:
            counters.failures = 0
            counters.successes += 1
            if instance.phase == Phase.PENDING:
                instance.phase = Phase.RUNNING
                changed = True
            if counters.successes >= policy.success_threshold and not self._flag(instance, kind):
                self._set_flag(instance, kind, True)
                changed = True
        else:
            counters.successes = 0
            counters.failures += 1
            self.logger.debug(f"{kind.value} probe failed for {instance.instance_id} "
                              f"({counters.failures}/{policy.failure_threshold}): {result.reason}")
            if counters.failures >= policy.failure_threshold and self._flag(instance, kind):
                self._set_flag(instance, kind, False)
                changed = True
            if kind == ProbeKind.LIVENESS and counters.failures == policy.failure_threshold:
                instance.alive = False
                instance.ready = False
                instance.readiness.successes = 0
                dead = True

        if dead:
            self.logger.error(f"Instance {instance.instance_id} failed liveness "
                              f"{policy.failure_threshold} times in a row")
            self.store.commit("dead", instance.instance_id)
            return "dead"
        if changed:
            self.logger.info(f"Instance {instance.instance_id}: phase={instance.phase.value} "
                             f"ready={instance.ready} alive={instance.alive}")
            self.store.commit("health", instance.instance_id)
            return "health"
        return None

    @staticmethod
    def _flag(instance, kind):
        return instance.ready if kind == ProbeKind.READINESS else instance.alive

    @staticmethod
    def _set_flag(instance, kind, value):
        if kind == ProbeKind.READINESS:
            instance.ready = value
        else:
            instance.alive = value
