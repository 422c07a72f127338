"""Global fixed-window rate limiter shared by every worker process via Redis."""

import asyncio
import math
import time
from collections.abc import Awaitable, Callable

from redis.asyncio import Redis


class RateLimiter:
    """Allow at most ``limit`` acquisitions per ``window_seconds`` across all processes.

    Each window is one Redis counter (INCR) that expires shortly after the
    window closes, so no cleanup job is needed.
    """

    def __init__(
        self,
        redis: Redis,
        limit: int = 10,
        window_seconds: float = 1.0,
        key: str = "agentloop:ratelimit:steps",
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.redis = redis
        self.limit = limit
        self.window_seconds = window_seconds
        self.key = key
        self._clock = clock
        self._sleep = sleep

    def _bucket(self, now: float) -> int:
        return int(now // self.window_seconds)

    async def try_acquire(self, now: float | None = None) -> bool:
        """Take one slot in the current window. Returns False when the window is full."""
        now = now if now is not None else self._clock()
        bucket_key = f"{self.key}:{self._bucket(now)}"

        count = await self.redis.incr(bucket_key)
        if count == 1:
            await self.redis.expire(bucket_key, math.ceil(self.window_seconds) + 1)
        return count <= self.limit

    async def acquire(self) -> None:
        """Block until a slot is available."""
        while True:
            now = self._clock()
            if await self.try_acquire(now):
                return
            next_window = (self._bucket(now) + 1) * self.window_seconds
            await self._sleep(max(next_window - now, 0.001))
