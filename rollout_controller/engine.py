import asyncio
import uuid
from enum import Enum

from .errors import InstanceManagerUnavailable, RolloutConflict
from .instance_manager import call_with_retries
from .models import Counts, Instance, InstanceSpec, Phase, RetryPolicy, RolloutPhase, RolloutPlan
from .logger import get_logger


class Action(str, Enum):
    CREATE = "create"
    TERMINATE = "terminate"
    COMPLETE = "complete"
    WAIT = "wait"


def validate_strategy(replicas, max_unavailable, max_surge):
    if replicas < 0:
        raise ValueError("replicas must be >= 0")
    if max_unavailable < 0 or max_surge < 0:
        raise ValueError("max_unavailable and max_surge must be >= 0")
    if max_unavailable == 0 and max_surge == 0:
        raise ValueError("max_unavailable and max_surge cannot both be 0")


def decide(counts, replicas, max_unavailable, max_surge, candidate_available=None):
    """Pick the next rollout action from live counts.

    ``candidate_available`` describes the instance that would be terminated
    next: None when there is nothing to remove, otherwise whether removing it
    costs one unit of availability. An unavailable candidate can always go.
    """
    if counts.total_old == 0 and counts.total_new == replicas and counts.available_new == replicas:
        return Action.COMPLETE
    if counts.total < replicas + max_surge and counts.total_new < replicas:
        return Action.CREATE
    if candidate_available is False:
        return Action.TERMINATE
    if candidate_available and counts.available - 1 >= replicas - max_unavailable:
        return Action.TERMINATE
    return Action.WAIT


class RolloutEngine:
    """Replaces one group's instances with a new version, one decision at a time.

    The engine subscribes to the instance store and re-evaluates the active
    plan after every change. Each evaluation re-reads live counts, takes one
    action, and repeats until nothing more is allowed. Instance manager
    commands run in the background; their outcome shows up as later store
    changes.
    """

    def __init__(self, store, instance_manager, retry=None, secrets=None):
        self.store = store
        self.instance_manager = instance_manager
        self.retry = retry or RetryPolicy()
        self.secrets = secrets or {}
        self.plan = None
        self.plans = {}
        self._lock = asyncio.Lock()
        self._tick_scheduled = False
        self._tasks = set()
        self.terminating = set()  # instance IDs with a terminate command in flight
        self.logger = get_logger(f"engine.{store.service}")
        store.subscribe(self._on_store_event)

    @staticmethod
    def plan_steps(replicas, max_unavailable, max_surge, old_count=None, new_count=0):
        """Dry run: the actions a rollout takes if every new instance is Ready at once"""
        validate_strategy(replicas, max_unavailable, max_surge)
        old = replicas if old_count is None else old_count
        new = new_count
        steps = []
        # Every action moves one instance, so this bounds any rollout that can finish
        for _ in range(2 * (old + replicas) + 1):
            counts = Counts(available_old=old, available_new=new, total_old=old, total_new=new)
            candidate = True if old > 0 else None
            action = decide(counts, replicas, max_unavailable, max_surge, candidate)
            steps.append(action.value)
            if action == Action.CREATE:
                new += 1
            elif action == Action.TERMINATE:
                old -= 1
            else:
                break
        return steps

    def start(self, new_version, max_unavailable, max_surge, group=None, replicas=None):
        """Create and schedule a plan moving ``group`` to ``new_version``"""
        if self.plan is not None and self.plan.active:
            self.logger.error(f"Rollout {self.plan.plan_id} already in progress")
            raise RolloutConflict(self.store.service, self.plan.plan_id)
        if not new_version:
            raise ValueError("new_version must not be empty")

        group = group or self.store.selected_group
        if replicas is None:
            live = [i for i in self.store.instances(group) if i.phase != Phase.TERMINATING]
            replicas = len(live) + self.store.pending(group)
        validate_strategy(replicas, max_unavailable, max_surge)

        plan = RolloutPlan(
            plan_id=uuid.uuid4().hex[:12],
            service=self.store.service,
            group=group,
            new_version=new_version,
            replicas=replicas,
            max_unavailable=max_unavailable,
            max_surge=max_surge,
        )
        self.plans[plan.plan_id] = plan
        self.plan = plan
        plan.record("plan_started", group=group, version=new_version, replicas=replicas,
                    max_unavailable=max_unavailable, max_surge=max_surge)
        self.logger.info(f"Starting rollout {plan.plan_id}: {group} -> {new_version} "
                         f"(replicas={replicas}, max_unavailable={max_unavailable}, max_surge={max_surge})")
        self._schedule_tick()
        return plan

    def abort(self, reason="aborted by operator", error=None, plan=None):
        """Stop issuing actions for the plan; instances already created keep running"""
        plan = plan or self.plan
        if plan is None or not plan.active:
            return plan
        counts = self.counts(plan)
        plan.phase = RolloutPhase.ABORTED
        plan.aborted_reason = reason
        plan.error = error
        plan.record("aborted", reason=reason, total_old=counts.total_old, total_new=counts.total_new,
                    available_old=counts.available_old, available_new=counts.available_new)
        self.logger.warning(f"ROLLOUT ABORTED: {plan.plan_id} ({reason}); "
                            f"{counts.total_new} new / {counts.total_old} old instances left in place")
        return plan

    def counts(self, plan):
        counts = Counts()
        for instance in self.store.instances(plan.group):
            if instance.version == plan.new_version:
                counts.total_new += 1
                counts.available_new += instance.available
            else:
                counts.total_old += 1
                counts.available_old += instance.available
        pending_new = self.store.pending(plan.group, plan.new_version)
        counts.total_new += pending_new
        counts.total_old += self.store.pending(plan.group) - pending_new
        return counts

    def _removal_candidate(self, plan):
        """Next instance to terminate: unavailable ones first, then oldest first"""
        live = [i for i in self.store.instances(plan.group) if i.phase in (Phase.PENDING, Phase.RUNNING)]
        candidates = [i for i in live if i.version != plan.new_version]
        if not candidates:
            surplus = [i for i in live if i.version == plan.new_version]
            if len(surplus) <= plan.replicas:
                return None
            candidates = surplus
        return min(candidates, key=lambda i: (i.available, i.created_at, i.instance_id))

    async def tick(self):
        """Evaluate the active plan until it has to wait for the next health change"""
        async with self._lock:
            plan = self.plan
            while plan is not None and plan.active:
                if plan.phase == RolloutPhase.PLANNING:
                    plan.phase = RolloutPhase.IN_PROGRESS
                self._reap(plan)
                counts = self.counts(plan)
                candidate = self._removal_candidate(plan)
                action = decide(counts, plan.replicas, plan.max_unavailable, plan.max_surge,
                                None if candidate is None else candidate.available)
                if action == Action.COMPLETE:
                    self._complete(plan, counts)
                elif action == Action.CREATE:
                    self._issue_create(plan)
                elif action == Action.TERMINATE:
                    self._issue_terminate(plan, candidate)
                else:
                    self.logger.debug(f"Rollout {plan.plan_id} waiting: {counts}")
                    break

    @property
    def busy(self):
        return bool(self._tasks)

    async def drain(self):
        """Wait until no command or scheduled tick is outstanding"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _complete(self, plan, counts):
        plan.phase = RolloutPhase.COMPLETED
        plan.record("completed", total_new=counts.total_new)
        self.logger.info(f"SUCCESS: Rollout {plan.plan_id} completed - {counts.total_new} instances "
                         f"running {plan.new_version}")

    def _issue_create(self, plan):
        spec = InstanceSpec(plan.service, plan.new_version, plan.group, secrets=self.secrets)
        self.store.reserve(plan.group, plan.new_version)
        plan.record("create", version=plan.new_version)
        self.logger.info(f"Rollout {plan.plan_id}: creating {plan.new_version} instance in {plan.group}")
        self._spawn(self._create(plan, spec))

    def _issue_terminate(self, plan, instance):
        self.terminating.add(instance.instance_id)
        self.store.set_phase(instance.instance_id, Phase.TERMINATING)
        plan.record("terminate", instance_id=instance.instance_id, version=instance.version)
        self.logger.info(f"Rollout {plan.plan_id}: terminating {instance.instance_id} ({instance.version})")
        self._spawn(self._terminate(plan, instance))

    def _reap(self, plan):
        """Re-issue terminate for instances an earlier failed command left Terminating"""
        for instance in self.store.instances(plan.group):
            if instance.phase != Phase.TERMINATING or instance.instance_id in self.terminating:
                continue
            self.terminating.add(instance.instance_id)
            plan.record("terminate", instance_id=instance.instance_id, version=instance.version, retry=True)
            self.logger.info(f"Rollout {plan.plan_id}: retrying terminate of {instance.instance_id}")
            self._spawn(self._terminate(plan, instance))

    async def _create(self, plan, spec):
        describe = f"create {spec.version} in {spec.group}"
        try:
            created, error = await call_with_retries(
                lambda: self.instance_manager.create(spec), describe,
                self.retry, self.logger, cancelled=lambda: not plan.active)
        except InstanceManagerUnavailable as e:
            self.store.release(spec.group, spec.version)
            plan.record("command_failed", command="create", error=str(e.last_error))
            self.abort(e.reason, error=e, plan=plan)
            return

        if created is None:
            self.store.release(spec.group, spec.version)
            plan.record("command_failed", command="create", error=str(error))
            return

        instance = Instance(created.instance_id, spec.version, spec.group, host=created.host, port=created.port)
        try:
            self.store.release(spec.group, spec.version, instance)
        except ValueError as e:
            plan.record("command_failed", command="create", error=str(e))
            self.logger.error(f"Rollout {plan.plan_id}: could not register created instance: {e}")
            return
        plan.created.append(instance.instance_id)
        plan.record("created", instance_id=instance.instance_id)

    async def _terminate(self, plan, instance):
        describe = f"terminate {instance.instance_id}"
        try:
            ok, error = await call_with_retries(
                lambda: self.instance_manager.terminate(instance.instance_id), describe,
                self.retry, self.logger, cancelled=lambda: not plan.active)
        except InstanceManagerUnavailable as e:
            self.terminating.discard(instance.instance_id)
            plan.record("command_failed", command="terminate", instance_id=instance.instance_id,
                        error=str(e.last_error))
            self.abort(e.reason, error=e, plan=plan)
            return

        self.terminating.discard(instance.instance_id)
        if not ok:
            plan.record("command_failed", command="terminate", instance_id=instance.instance_id,
                        error=str(error))
            return
        plan.terminated.append(instance.instance_id)
        plan.record("terminated", instance_id=instance.instance_id)
        self.store.set_phase(instance.instance_id, Phase.TERMINATED)

    def _on_store_event(self, event, store):
        if self.plan is not None and self.plan.active:
            self._schedule_tick()

    def _schedule_tick(self):
        if self._tick_scheduled:
            return
        self._tick_scheduled = True
        self._spawn(self._scheduled_tick())

    async def _scheduled_tick(self):
        self._tick_scheduled = False
        await self.tick()

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Background task failed: {task.exception()!r}")
