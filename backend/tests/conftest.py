"""Shared test fixtures for all test groups."""

import pytest
from fakeredis import FakeAsyncRedis

from agentloop.core.config import Settings
from agentloop.engine.fake_llm import ScriptedLLMClient
from agentloop.engine.tools import ToolRegistry
from agentloop.services.engine_service import EngineService
from agentloop.store.memory import InMemoryStore


@pytest.fixture
async def redis():
    """Fake Redis with decode_responses=True, flushed after each test."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def settings():
    """Engine settings tuned for fast, deterministic tests."""
    return Settings(
        continuation_delay_seconds=0,
        worker_rate_limit=10_000,
        checkpoint_interval=5,
        model_call_timeout_seconds=0,
        max_iterations=100,
        autonomous_max_iterations=3,
    )


@pytest.fixture
def sleeps():
    """Delays requested by the tool executor; nothing actually sleeps."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def llm():
    return ScriptedLLMClient()


@pytest.fixture
def make_service(store, redis, settings, fake_sleep):
    """Build an EngineService over in-memory persistence and fake Redis (workers not started)."""

    def _make(llm, tools=None, **overrides) -> EngineService:
        return EngineService(
            store=store,
            session_store=store,
            redis=redis,
            llm=llm,
            tools=tools or ToolRegistry(),
            settings=settings.model_copy(update=overrides),
            tool_sleep=fake_sleep,
        )

    return _make
