from collections import namedtuple

from .admission import derive_admission
from .models import Phase
from .logger import get_logger

StoreEvent = namedtuple("StoreEvent", ["revision", "kind", "instance_id"])


class InstanceStore:
    """Single-writer table of a service's instances.

    Every mutation bumps ``revision``, recomputes the admission snapshot and
    then notifies listeners synchronously. Mutations never await, so on the
    event loop each one is applied as a whole before anybody else reads.
    Terminated instances are dropped from the table.
    """

    def __init__(self, service, selected_group):
        self.service = service
        self.revision = 0
        self._instances = {}
        self._selected_group = selected_group
        self._pending = {}
        self._listeners = []
        self._admission = derive_admission([], selected_group, 0)
        self.logger = get_logger(f"store.{service}")

    @property
    def selected_group(self):
        return self._selected_group

    @property
    def admission(self):
        return self._admission

    def subscribe(self, listener):
        self._listeners.append(listener)

    def get(self, instance_id):
        return self._instances.get(instance_id)

    def instances(self, group=None):
        """Live instances, oldest first"""
        found = [i for i in self._instances.values() if group is None or i.group == group]
        return sorted(found, key=lambda i: (i.created_at, i.instance_id))

    def groups(self):
        return sorted({i.group for i in self._instances.values()} | {self._selected_group})

    def pending(self, group, version=None):
        if version is not None:
            return self._pending.get((group, version), 0)
        return sum(n for (g, _), n in self._pending.items() if g == group)

    def add(self, instance):
        if instance.instance_id in self._instances:
            raise ValueError(f"instance {instance.instance_id} already registered")
        self._instances[instance.instance_id] = instance
        self.commit("added", instance.instance_id)

    def set_phase(self, instance_id, phase):
        instance = self._instances.get(instance_id)
        if instance is None or instance.phase == phase:
            return instance
        instance.phase = phase
        if phase in (Phase.TERMINATING, Phase.TERMINATED):
            instance.ready = False
        if phase == Phase.TERMINATED:
            del self._instances[instance_id]
        self.commit("phase", instance_id)
        return instance

    def select_group(self, group):
        if group == self._selected_group:
            return
        self._selected_group = group
        self.commit("selector")

    def reserve(self, group, version):
        key = (group, version)
        self._pending[key] = self._pending.get(key, 0) + 1
        self.commit("reserved")

    def release(self, group, version, instance=None):
        """Drop one reservation, registering the created instance in the same revision"""
        key = (group, version)
        remaining = self._pending.get(key, 0) - 1
        if remaining > 0:
            self._pending[key] = remaining
        else:
            self._pending.pop(key, None)
        if instance is None:
            self.commit("released")
            return
        if instance.instance_id in self._instances:
            self.commit("released")
            raise ValueError(f"instance {instance.instance_id} already registered")
        self._instances[instance.instance_id] = instance
        self.commit("added", instance.instance_id)

    def commit(self, kind, instance_id=None):
        self.revision += 1
        self._admission = derive_admission(self._instances.values(), self._selected_group, self.revision)
        event = StoreEvent(self.revision, kind, instance_id)
        for listener in list(self._listeners):
            listener(event, self)
        return event
