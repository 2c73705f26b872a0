from .models import AdmissionSnapshot, Phase
from .logger import get_logger


def is_admissible(instance, group):
    return instance.ready and instance.phase == Phase.RUNNING and instance.group == group


def derive_admission(instances, group, revision):
    """Build the admission snapshot for ``group`` from a list of instances"""
    members = frozenset(i.instance_id for i in instances if is_admissible(i, group))
    return AdmissionSnapshot(revision=revision, group=group, members=members)


def ready_in_group(instances, group):
    return [i for i in instances if is_admissible(i, group)]


class AdmissionPublisher:
    """Hands admission snapshots to traffic routing consumers.

    The store replaces its snapshot wholesale on every change; this class only
    forwards snapshots whose membership or group differs from the last one it
    published, so consumers see each distinct admission set exactly once.
    """

    def __init__(self, store):
        self.store = store
        self.logger = get_logger(f"admission.{store.service}")
        self._consumers = []
        self._last = store.admission
        store.subscribe(self._on_change)

    @property
    def current(self):
        return self.store.admission

    def subscribe(self, consumer):
        self._consumers.append(consumer)
        consumer(self._last)

    def _on_change(self, event, store):
        snapshot = store.admission
        if snapshot.members == self._last.members and snapshot.group == self._last.group:
            return
        self.logger.debug(f"Admission set for {snapshot.group} now {sorted(snapshot.members)} "
                          f"(revision {snapshot.revision})")
        self._last = snapshot
        for consumer in list(self._consumers):
            consumer(snapshot)
