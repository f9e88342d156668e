"""
Per-provider throttling.

A token bucket caps requests per second and a semaphore caps in-flight
requests, so a provider's ``rate_limit`` bounds the traffic it receives no
matter how large a geocoding batch is.
"""

from __future__ import annotations

import asyncio
import math
import time
from contextlib import asynccontextmanager


class ProviderRateLimiter:
    """
    Process-local token bucket plus concurrency bound.

    ``rps`` is the sustained request rate; ``burst`` tokens may be spent at
    once. Concurrency defaults to ``ceil(rps)``, at least one.
    """

    def __init__(self, *, rps: float, burst: int | None = None, max_concurrency: int | None = None) -> None:
        if rps <= 0:
            raise ValueError("rps must be positive")
        self.rps = rps
        self.burst = burst or max(1, int(rps))
        self.max_concurrency = max_concurrency or max(1, math.ceil(rps))

        self._tokens: float = float(self.burst)
        self._last_refill_s: float = time.monotonic()
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self.max_concurrency)

    def _refill(self) -> None:
        now = time.monotonic()
        dt = now - self._last_refill_s
        self._tokens = min(float(self.burst), self._tokens + dt * self.rps)
        self._last_refill_s = now

    async def acquire_token(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                await asyncio.sleep((1.0 - self._tokens) / self.rps)

    @asynccontextmanager
    async def slot(self):
        """Hold a concurrency slot and spend one token for a single request."""
        async with self._semaphore:
            await self.acquire_token()
            yield
