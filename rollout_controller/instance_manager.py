import asyncio
import itertools
from collections import namedtuple

from .errors import InstanceManagerUnavailable
from .failure import FailureInjector
from .models import RetryPolicy
from .logger import get_logger

CreatedInstance = namedtuple("CreatedInstance", ["instance_id", "host", "port"])


class InstanceManager:
    """The external collaborator that actually starts and stops instances.

    Both commands are coroutines that report failure through their return
    value instead of raising: ``create`` returns ``(CreatedInstance, None)``
    or ``(None, error)`` and ``terminate`` returns ``(True, None)`` or
    ``(False, error)``.
    """

    async def create(self, spec):
        raise NotImplementedError

    async def terminate(self, instance_id):
        raise NotImplementedError


class SimulatedInstanceManager(InstanceManager):
    """In-process instance manager used by the CLI simulation and tests"""

    def __init__(self, failure_injector=None, host="127.0.0.1", base_port=9000):
        self.failure_injector = failure_injector if failure_injector else FailureInjector()
        self.host = host
        self._ports = itertools.count(base_port)
        self._ids = itertools.count(1)
        self.created = []
        self.terminated = []
        self.logger = get_logger("instance_manager")

    async def create(self, spec):
        await self.failure_injector.pause()
        error = self.failure_injector.check("create", spec.version)
        if error:
            return None, error
        instance_id = f"{spec.service}-{spec.group}-{spec.version}-{next(self._ids)}"
        self.created.append(instance_id)
        self.logger.debug(f"Created {instance_id}")
        return CreatedInstance(instance_id, self.host, next(self._ports)), None

    async def terminate(self, instance_id):
        await self.failure_injector.pause()
        error = self.failure_injector.check("terminate", instance_id)
        if error:
            return False, error
        self.terminated.append(instance_id)
        self.logger.debug(f"Terminated {instance_id}")
        return True, None


async def call_with_retries(command, describe, retry=None, logger=None, cancelled=None):
    """Run an instance manager command until it succeeds or retries run out.

    ``command`` is a zero-argument coroutine function returning
    ``(value, error)``. Raises InstanceManagerUnavailable once
    ``retry.max_attempts`` retries have failed. ``cancelled`` is checked
    before every retry; when it returns true the last result is handed back
    untouched and no further attempts are made.
    """
    retry = retry or RetryPolicy()
    logger = logger or get_logger("instance_manager")
    max_attempts = max(1, retry.max_attempts + 1)  # +1 because we count initial attempt

    value = error = None
    for attempt in range(1, max_attempts + 1):
        if attempt > 1 and cancelled is not None and cancelled():
            logger.info(f"Not retrying {describe}: cancelled")
            return value, error

        value, error = await command()
        if error is None:
            return value, None

        logger.warning(f"{describe} attempt {attempt} failed: {error}")
        if attempt >= max_attempts:
            logger.error(f"{describe} failed after {attempt} attempts")
            raise InstanceManagerUnavailable(describe, attempt, error)

        backoff_time = retry.backoff(attempt)
        logger.info(f"Retrying {describe} in {backoff_time} seconds...")
        await asyncio.sleep(backoff_time)
