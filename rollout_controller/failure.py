import asyncio


class FailureInjector:
    """Scripted misbehaviour for SimulatedInstanceManager.

    ``fail_attempts`` maps ``"<command>:<target>"`` (``"create:v2"``,
    ``"terminate:web-blue-1"``) to the number of leading attempts that fail.
    ``unavailable`` makes every command fail, and ``delay`` is added before
    each command returns.
    """

    def __init__(self, fail_attempts=None, delay=0, unavailable=False):
        self.fail_map = dict(fail_attempts or {})
        self.delay = delay
        self.unavailable = unavailable
        self.attempts = {}
        self.failures = []

    async def pause(self):
        if self.delay > 0:
            await asyncio.sleep(self.delay)

    def check(self, command, target):
        """Count an attempt; returns an error message when it is meant to fail"""
        key = f"{command}:{target}"
        attempt = self.attempts[key] = self.attempts.get(key, 0) + 1
        if self.unavailable or attempt <= self.fail_map.get(key, 0):
            self.failures.append(key)
            return f"simulated {command} failure for {target} (attempt {attempt})"
        return None
