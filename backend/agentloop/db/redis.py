"""Redis client shared by the step queue, the rate limiter and the event stream."""

from redis.asyncio import Redis

from agentloop.core.config import Settings

_client: Redis | None = None


async def init_redis(settings: Settings) -> Redis:
    global _client

    if _client is None:
        # Queue payloads and event frames are JSON text
        client = Redis.from_url(settings.redis_url, decode_responses=True, health_check_interval=30)
        await client.ping()
        _client = client
    return _client


async def ping_redis() -> None:
    if _client is None:
        raise RuntimeError("redis is not initialised")
    await _client.ping()


async def close_redis() -> None:
    global _client

    if _client is not None:
        await _client.aclose()
    _client = None
