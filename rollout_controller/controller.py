import asyncio

from .admission import AdmissionPublisher
from .engine import RolloutEngine
from .errors import InstanceManagerUnavailable, UnknownRollout, UnknownService
from .health import InstanceHealthTracker
from .instance_manager import call_with_retries
from .models import Instance, InstanceSpec, Phase, ProbeKind, ServiceStatus
from .probe import ProbeExecutor
from .store import InstanceStore
from .switch import TrafficSwitchController
from .logger import get_logger


class ServiceController:
    """Wires probes, health tracking, rollouts and traffic switching for one service"""

    def __init__(self, config, instance_manager, probe_executor=None):
        self.config = config
        self.instance_manager = instance_manager
        self.store = InstanceStore(config.name, config.active_group)
        self.tracker = InstanceHealthTracker(self.store, config.readiness, config.liveness)
        self.admission = AdmissionPublisher(self.store)
        self.engine = RolloutEngine(self.store, instance_manager, config.retry, config.secrets)
        self.switch = TrafficSwitchController(self.store)
        self.probes = probe_executor
        self._probing = False
        self._tasks = set()
        self.logger = get_logger(f"controller.{config.name}")
        self.store.subscribe(self._on_store_event)

    @property
    def name(self):
        return self.config.name

    def register(self, instance):
        """Adopt an instance that is already running somewhere"""
        self.store.add(instance)
        return instance

    def record_probe(self, result):
        return self.tracker.record(result)

    def status(self):
        instances = self.store.instances()
        plan = self.engine.plan
        return ServiceStatus(
            service=self.name,
            active_group=self.store.selected_group,
            rollout_phase=plan.phase if plan else None,
            ready_count=len(self.store.admission),
            total_count=len(instances),
            plan_id=plan.plan_id if plan else None,
        )

    def start_rollout(self, new_version, max_unavailable=None, max_surge=None, group=None):
        if max_unavailable is None:
            max_unavailable = self.config.max_unavailable
        if max_surge is None:
            max_surge = self.config.max_surge
        return self.engine.start(new_version, max_unavailable, max_surge,
                                 group=group, replicas=self.config.replicas)

    def abort_rollout(self, reason="aborted by operator"):
        return self.engine.abort(reason)

    def switch_to(self, group):
        return self.switch.switch_to(group)

    async def start_probing(self):
        if self.probes is None:
            self.probes = ProbeExecutor(self.config.probe, on_result=self.record_probe)
        elif self.probes.on_result is None:
            self.probes.on_result = self.record_probe
        self._probing = True
        for instance in self.store.instances():
            if instance.phase in (Phase.PENDING, Phase.RUNNING):
                self.probes.start(instance, self._policies())
        self.logger.info(f"Probing {len(self.store.instances())} instances")

    async def stop_probing(self):
        self._probing = False
        if self.probes is not None:
            await self.probes.close()

    async def drain(self):
        """Wait for background commands and rollout ticks to settle"""
        while self._tasks or self.engine.busy:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.engine.drain()

    def _policies(self):
        return {ProbeKind.READINESS: self.tracker.policy(ProbeKind.READINESS),
                ProbeKind.LIVENESS: self.tracker.policy(ProbeKind.LIVENESS)}

    def _on_store_event(self, event, store):
        if event.kind == "dead":
            self._replace(store.get(event.instance_id))
        elif event.kind == "added" and self._probing:
            self.probes.start(store.get(event.instance_id), self._policies())
        elif event.kind == "phase" and self._probing:
            instance = store.get(event.instance_id)
            if instance is None or instance.phase == Phase.TERMINATING:
                self._spawn(self.probes.stop(event.instance_id))

    def _replace(self, instance):
        """Terminate a dead instance and start a fresh one of the same version"""
        self.engine.terminating.add(instance.instance_id)
        self.store.set_phase(instance.instance_id, Phase.TERMINATING)
        self._spawn(self._terminate(instance))

        plan = self.engine.plan
        if plan is not None and plan.active and plan.group == instance.group:
            # the rollout's own accounting creates the replacement, at the new version
            self.logger.info(f"Rollout {plan.plan_id} will replace dead instance {instance.instance_id}")
            return
        spec = InstanceSpec(self.name, instance.version, instance.group, secrets=self.config.secrets)
        self.store.reserve(spec.group, spec.version)
        self.logger.info(f"Recreating {instance.version} instance in {instance.group} "
                         f"to replace {instance.instance_id}")
        self._spawn(self._create(spec))

    async def _terminate(self, instance):
        try:
            await call_with_retries(lambda: self.instance_manager.terminate(instance.instance_id),
                                    f"terminate {instance.instance_id}", self.config.retry, self.logger)
        except InstanceManagerUnavailable as e:
            self.logger.error(f"Dead instance {instance.instance_id} left terminating: {e}")
            return
        finally:
            self.engine.terminating.discard(instance.instance_id)
        self.store.set_phase(instance.instance_id, Phase.TERMINATED)

    async def _create(self, spec):
        try:
            created, _ = await call_with_retries(lambda: self.instance_manager.create(spec),
                                                 f"create {spec.version} in {spec.group}",
                                                 self.config.retry, self.logger)
        except InstanceManagerUnavailable as e:
            self.logger.error(f"Could not recreate {spec.version} instance in {spec.group}: {e}")
            self.store.release(spec.group, spec.version)
            return
        instance = Instance(created.instance_id, spec.version, spec.group, host=created.host, port=created.port)
        try:
            self.store.release(spec.group, spec.version, instance)
        except ValueError as e:
            self.logger.error(f"Could not register replacement instance: {e}")

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Background task failed: {task.exception()!r}")


class ControlPlane:
    """Operator-facing entry points across all managed services"""

    def __init__(self, instance_manager):
        self.instance_manager = instance_manager
        self.services = {}
        self.logger = get_logger("control_plane")

    def add_service(self, config, probe_executor=None):
        if config.name in self.services:
            raise ValueError(f"service {config.name} already registered")
        controller = ServiceController(config, self.instance_manager, probe_executor)
        self.services[config.name] = controller
        return controller

    def service(self, name):
        try:
            return self.services[name]
        except KeyError:
            raise UnknownService(name) from None

    def get_status(self, name):
        return self.service(name).status()

    def start_rollout(self, name, new_version, max_unavailable=None, max_surge=None, group=None):
        plan = self.service(name).start_rollout(new_version, max_unavailable, max_surge, group=group)
        return plan.plan_id

    def get_rollout(self, plan_id):
        for controller in self.services.values():
            if plan_id in controller.engine.plans:
                return controller.engine.plans[plan_id]
        raise UnknownRollout(plan_id)

    def abort_rollout(self, plan_id, reason="aborted by operator"):
        plan = self.get_rollout(plan_id)
        return self.service(plan.service).engine.abort(reason, plan=plan)

    def switch_to(self, name, group):
        return self.service(name).switch_to(group)

    async def drain(self):
        for controller in list(self.services.values()):
            await controller.drain()

    async def close(self):
        for controller in self.services.values():
            await controller.stop_probing()
