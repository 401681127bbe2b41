"""Fixed-interval request spacing for rate-limited upstream services."""

from __future__ import annotations

import asyncio
import time


class RequestThrottle:
    """Enforce a minimum interval between consecutive requests to one upstream.

    The pipeline never issues concurrent requests, so a single timestamp is
    enough; the lock only serializes callers that share a throttle by mistake.
    """

    def __init__(self, min_interval: float = 1.0) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._last_request_ts: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self.min_interval > 0 and self._last_request_ts is not None:
                since_last = time.monotonic() - self._last_request_ts
                wait_for = self.min_interval - since_last
                if wait_for > 0:
                    await asyncio.sleep(wait_for)
            self._last_request_ts = time.monotonic()
