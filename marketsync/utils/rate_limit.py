"""Per-host rate limiting utilities."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict


class RateLimiter:
    """Minimum spacing between requests to the same host."""

    def __init__(self, *, rate: float = 2.0) -> None:
        self.rate = rate
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_request: dict[str, float] = defaultdict(float)

    async def wait_for_host(self, host: str) -> None:
        if self.rate <= 0:
            return
        async with self._locks[host]:
            elapsed = time.monotonic() - self._last_request[host]
            min_interval = 1.0 / self.rate
            if elapsed < min_interval:
                await asyncio.sleep(min_interval - elapsed)
            self._last_request[host] = time.monotonic()
