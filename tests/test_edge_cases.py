import pytest
from rollout_controller.config import ServiceConfig
from rollout_controller.controller import ServiceController
from rollout_controller.instance_manager import SimulatedInstanceManager
from rollout_controller.models import Instance, Phase, ProbeKind, ProbeResult, RolloutPhase


def make_controller(replicas=None):
    return ServiceController(ServiceConfig(name="web", replicas=replicas), SimulatedInstanceManager())


def seed(controller, version, count, ready=True):
    for n in range(count):
        controller.register(Instance(f"blue-{version}-{n}", version, "blue", created_at=float(n),
                                     phase=Phase.RUNNING, ready=ready, alive=True))


def pass_probes(controller):
    for instance in controller.store.instances():
        if instance.phase in (Phase.PENDING, Phase.RUNNING) and not instance.ready:
            controller.record_probe(ProbeResult(instance.instance_id, ProbeKind.LIVENESS, True))
            controller.record_probe(ProbeResult(instance.instance_id, ProbeKind.READINESS, True))


class TestEdgeCasesAndErrorHandling:
    """Edge cases and error handling tests."""

    @pytest.mark.asyncio
    async def test_rollout_of_empty_service_completes(self):
        controller = make_controller()
        plan = controller.start_rollout("v2", max_unavailable=0, max_surge=1)
        await controller.drain()
        assert plan.replicas == 0
        assert plan.phase == RolloutPhase.COMPLETED
        assert len(controller.store.admission) == 0

    @pytest.mark.asyncio
    async def test_scale_to_zero_target_removes_everything(self):
        controller = make_controller(replicas=0)
        seed(controller, "v1", 2)
        plan = controller.start_rollout("v2", max_unavailable=0, max_surge=1)
        await controller.drain()
        assert plan.phase == RolloutPhase.COMPLETED
        assert controller.store.instances() == []
        assert len(controller.store.admission) == 0

    @pytest.mark.asyncio
    async def test_scale_up_during_rollout(self):
        controller = make_controller(replicas=3)
        seed(controller, "v1", 1)
        plan = controller.start_rollout("v2", max_unavailable=0, max_surge=1)
        for _ in range(20):
            await controller.drain()
            if not plan.active:
                break
            pass_probes(controller)
        assert plan.phase == RolloutPhase.COMPLETED
        assert sorted(i.version for i in controller.store.instances()) == ["v2", "v2", "v2"]

    @pytest.mark.asyncio
    async def test_already_at_target_version_completes_without_actions(self):
        controller = make_controller()
        seed(controller, "v2", 3)
        plan = controller.start_rollout("v2", max_unavailable=0, max_surge=1)
        await controller.drain()
        assert plan.phase == RolloutPhase.COMPLETED
        assert plan.created == []
        assert plan.terminated == []

    @pytest.mark.asyncio
    async def test_unready_old_instances_are_replaced_first(self):
        controller = make_controller()
        seed(controller, "v1", 2)
        controller.register(Instance("blue-v1-late", "v1", "blue", created_at=10.0,
                                     phase=Phase.RUNNING, ready=False, alive=True))
        plan = controller.start_rollout("v2", max_unavailable=0, max_surge=1)
        await controller.drain()
        pass_probes(controller)
        await controller.drain()
        assert plan.terminated[0] == "blue-v1-late"

    @pytest.mark.asyncio
    async def test_rollout_replaces_release_with_no_ready_instances(self):
        controller = make_controller()
        seed(controller, "v1", 3, ready=False)
        plan = controller.start_rollout("v2", max_unavailable=0, max_surge=1)
        for _ in range(20):
            await controller.drain()
            if not plan.active:
                break
            for instance in controller.store.instances("blue"):
                if instance.version == "v2" and not instance.ready:
                    controller.record_probe(ProbeResult(instance.instance_id, ProbeKind.LIVENESS, True))
                    controller.record_probe(ProbeResult(instance.instance_id, ProbeKind.READINESS, True))

        assert plan.phase == RolloutPhase.COMPLETED
        assert sorted(plan.terminated) == ["blue-v1-0", "blue-v1-1", "blue-v1-2"]
        instances = controller.store.instances("blue")
        assert [i.version for i in instances] == ["v2", "v2", "v2"]
        assert len(controller.store.admission) == 3

    @pytest.mark.asyncio
    async def test_both_limits_zero_rejected(self):
        controller = make_controller()
        seed(controller, "v1", 2)
        with pytest.raises(ValueError, match="cannot both be 0"):
            controller.start_rollout("v2", max_unavailable=0, max_surge=0)
        assert controller.engine.plan is None

    @pytest.mark.asyncio
    async def test_empty_version_rejected(self):
        controller = make_controller()
        with pytest.raises(ValueError, match="new_version"):
            controller.start_rollout("", max_unavailable=0, max_surge=1)

    @pytest.mark.asyncio
    async def test_config_defaults_used_for_strategy(self):
        controller = make_controller()
        seed(controller, "v1", 2)
        plan = controller.start_rollout("v2")
        assert plan.max_unavailable == 0
        assert plan.max_surge == 1
        await controller.drain()

    def test_status_of_empty_service(self):
        status = make_controller().status()
        assert status.ready_count == 0
        assert status.total_count == 0
        assert status.rollout_phase is None
