"""Async rate limiting for outbound gateway calls."""

from __future__ import annotations

import asyncio
import logging
from collections import deque

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window limiter: at most ``max_calls`` acquisitions per ``period`` seconds.

    Callers that would exceed the window wait (in FIFO order, via the lock)
    instead of failing, so a large payroll batch queues behind the provider
    ceiling rather than tripping it.
    """

    def __init__(self, max_calls: int, period: float = 1.0):
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if period <= 0:
            raise ValueError("period must be positive")
        self.max_calls = max_calls
        self.period = period
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            while True:
                now = loop.time()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                wait = self.period - (now - self._calls[0])
                logger.debug("Rate limit reached, waiting %.3fs", wait)
                await asyncio.sleep(wait)

    async def __aenter__(self) -> RateLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None
