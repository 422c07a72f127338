"""Tests for the Redis fixed-window RateLimiter."""

import pytest

from agentloop.queue.rate_limiter import RateLimiter

pytestmark = pytest.mark.unit


async def test_limit_per_window(redis):
    limiter = RateLimiter(redis, limit=2, window_seconds=1.0)

    assert await limiter.try_acquire(now=100.0)
    assert await limiter.try_acquire(now=100.5)
    assert not await limiter.try_acquire(now=100.9)
    assert await limiter.try_acquire(now=101.0)


async def test_limit_is_shared_between_instances(redis):
    first = RateLimiter(redis, limit=1, window_seconds=1.0)
    second = RateLimiter(redis, limit=1, window_seconds=1.0)

    assert await first.try_acquire(now=50.0)
    assert not await second.try_acquire(now=50.2)


async def test_window_key_expires(redis):
    limiter = RateLimiter(redis, limit=1, window_seconds=1.0, key="test:rl")

    await limiter.try_acquire(now=10.0)

    assert 0 < await redis.ttl("test:rl:10") <= 2


async def test_acquire_sleeps_until_next_window(redis):
    clock = [200.25]
    slept: list[float] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)
        clock[0] += delay

    limiter = RateLimiter(redis, limit=1, window_seconds=1.0, clock=lambda: clock[0], sleep=fake_sleep)

    await limiter.acquire()
    await limiter.acquire()

    assert slept == [pytest.approx(0.75)]
