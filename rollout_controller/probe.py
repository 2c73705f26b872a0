import asyncio

import aiohttp

from .models import PROBE_TIMEOUT, PROBE_UNREACHABLE, ProbeConfig, ProbeKind, ProbeResult
from .logger import get_logger


class ProbeExecutor:
    """Periodic HTTP GET health checks, one schedule per instance.

    Every instance gets a readiness and a liveness loop. The two loops share
    a per-instance lock, so at most one check against an instance is in
    flight at any time and a slow backend only delays its own next check.
    Results are handed to ``on_result`` as they arrive.
    """

    def __init__(self, config=None, on_result=None, session=None):
        self.config = config or ProbeConfig()
        self.on_result = on_result
        self._session = session
        self._owns_session = session is None
        self._tasks = {}
        self._locks = {}
        self.logger = get_logger("probe")

    def _get_session(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def url_for(self, instance, kind, policy=None):
        path = (policy.path if policy is not None and policy.path else None) or self.config.path
        return f"{self.config.scheme}://{instance.host}:{instance.port}{path}"

    async def check(self, instance, kind, policy=None):
        """Issue a single check and return its ProbeResult; never raises for probe failures"""
        kind = ProbeKind(kind)
        url = self.url_for(instance, kind, policy)
        loop = asyncio.get_running_loop()
        started = loop.time()
        success = False
        reason = None
        try:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_s)
            async with self._get_session().get(url, timeout=timeout, allow_redirects=False) as resp:
                success = 200 <= resp.status < 400
                if not success:
                    reason = f"http_{resp.status}"
        except asyncio.TimeoutError:
            reason = PROBE_TIMEOUT
        except aiohttp.ClientConnectorError:
            reason = PROBE_UNREACHABLE
        except aiohttp.ClientError as e:
            reason = f"error: {e.__class__.__name__}"

        latency = loop.time() - started
        if not success:
            self.logger.debug(f"{kind.value} check {url} failed: {reason}")
        return ProbeResult(instance.instance_id, kind, success, latency_s=latency, reason=reason)

    def start(self, instance, policies):
        """Start probing ``instance``; ``policies`` maps ProbeKind to HealthPolicy"""
        if instance.instance_id in self._tasks:
            return
        lock = self._locks.setdefault(instance.instance_id, asyncio.Lock())
        self._tasks[instance.instance_id] = [
            asyncio.ensure_future(self._probe_loop(instance, ProbeKind(kind), policy, lock))
            for kind, policy in policies.items()
        ]
        self.logger.debug(f"Started probing {instance.instance_id}")

    def probing(self, instance_id):
        return instance_id in self._tasks

    async def stop(self, instance_id):
        tasks = self._tasks.pop(instance_id, [])
        self._locks.pop(instance_id, None)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.debug(f"Stopped probing {instance_id}")

    async def close(self):
        for instance_id in list(self._tasks):
            await self.stop(instance_id)
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _probe_loop(self, instance, kind, policy, lock):
        if policy.initial_delay_s > 0:
            await asyncio.sleep(policy.initial_delay_s)
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                async with lock:
                    result = await self.check(instance, kind, policy)
                if self.on_result is not None:
                    self.on_result(result)
            except Exception as e:
                self.logger.error(f"{kind.value} probe of {instance.instance_id} failed unexpectedly: {e!r}")
            await asyncio.sleep(max(0.0, policy.period_s - (loop.time() - started)))
