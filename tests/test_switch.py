import pytest
from rollout_controller.admission import AdmissionPublisher
from rollout_controller.errors import NoHealthyTarget
from rollout_controller.models import Instance, Phase
from rollout_controller.store import InstanceStore
from rollout_controller.switch import TrafficSwitchController


def make_store(blue_ready=3, green_ready=3, green_total=3):
    store = InstanceStore("web", "blue")
    for n in range(3):
        store.add(Instance(f"blue-{n}", "v1", "blue", phase=Phase.RUNNING, ready=n < blue_ready, alive=True))
    for n in range(green_total):
        store.add(Instance(f"green-{n}", "v2", "green", phase=Phase.RUNNING, ready=n < green_ready, alive=True))
    return store


class TestTrafficSwitch:
    """Blue/green selector tests."""

    def test_switch_replaces_admission_set_in_one_step(self):
        store = make_store()
        publisher = AdmissionPublisher(store)
        seen = []
        publisher.subscribe(lambda snapshot: seen.append(snapshot))
        assert seen[-1].members == {"blue-0", "blue-1", "blue-2"}

        snapshot = TrafficSwitchController(store).switch_to("green")

        assert snapshot.group == "green"
        assert snapshot.members == {"green-0", "green-1", "green-2"}
        assert len(seen) == 2
        assert seen[1].members == {"green-0", "green-1", "green-2"}
        assert store.selected_group == "green"
        assert len(store.instances()) == 6

    def test_switch_to_unhealthy_group_refused(self):
        store = make_store(green_ready=0)
        before = store.admission
        with pytest.raises(NoHealthyTarget, match="green"):
            TrafficSwitchController(store).switch_to("green")
        assert store.selected_group == "blue"
        assert store.admission is before

    def test_switch_to_empty_group_refused(self):
        store = make_store()
        with pytest.raises(NoHealthyTarget):
            TrafficSwitchController(store).switch_to("purple")
        assert store.selected_group == "blue"

    def test_switch_needs_only_one_ready_instance(self):
        store = make_store(green_ready=1)
        snapshot = TrafficSwitchController(store).switch_to("green")
        assert snapshot.members == {"green-0"}

    def test_switch_to_selected_group_is_noop(self):
        store = make_store(blue_ready=0)
        revision = store.revision
        snapshot = TrafficSwitchController(store).switch_to("blue")
        assert snapshot.group == "blue"
        assert store.revision == revision

    def test_terminating_instances_never_admitted(self):
        store = make_store()
        store.set_phase("blue-1", Phase.TERMINATING)
        assert store.admission.members == {"blue-0", "blue-2"}
        TrafficSwitchController(store).switch_to("green")
        TrafficSwitchController(store).switch_to("blue")
        assert "blue-1" not in store.admission

    def test_empty_store_has_empty_admission(self):
        store = InstanceStore("web", "blue")
        assert len(store.admission) == 0
        assert store.admission.group == "blue"
