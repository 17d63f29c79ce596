"""Async token bucket limiting outbound Notion API calls."""

from __future__ import annotations

import asyncio
import time


class RateLimiter:
    """Token bucket shared by every caller of one Notion integration.

    Tokens refill continuously at ``rate_per_second`` up to ``capacity``.
    ``acquire()`` waits until a token is available. A non-positive rate
    disables limiting.

    Args:
        rate_per_second: Sustained request rate.
        capacity: Burst size. Defaults to one second's worth of tokens.
    """

    def __init__(self, rate_per_second: float, capacity: float | None = None) -> None:
        self._rate = rate_per_second
        self._capacity = capacity if capacity is not None else max(rate_per_second, 1.0)
        self._tokens = self._capacity
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self._capacity, self._tokens + (now - self._updated) * self._rate)
        self._updated = now

    async def acquire(self) -> None:
        """Take one token, sleeping until the bucket has refilled enough."""
        if self._rate <= 0:
            return
        async with self._lock:
            self._refill()
            while self._tokens < 1:
                await asyncio.sleep((1 - self._tokens) / self._rate)
                self._refill()
            self._tokens -= 1
