"""Tests for EngineService lifecycle and background autonomous sessions."""

import asyncio
import json

import pytest
from factories import TEST_USER_ID

from agentloop.engine.fake_llm import ScriptedLLMClient
from agentloop.schemas.autonomous import SessionStatus

pytestmark = pytest.mark.unit

DONE = json.dumps({"goal_achieved": True, "progress_percentage": 100, "should_continue": False})


async def test_nothing_runs_until_started(make_service):
    service = make_service(ScriptedLLMClient(), worker_concurrency=1, worker_poll_interval_seconds=0.01)

    assert not service.started
    assert not service.workers.running

    await service.start()
    assert service.started
    assert service.workers.running

    await service.start()  # idempotent
    await service.stop()
    assert not service.started
    assert not service.workers.running


async def test_start_without_workers(make_service):
    service = make_service(ScriptedLLMClient())

    await service.start(workers=False)

    assert service.started
    assert not service.workers.running
    await service.stop()


async def test_create_session_runs_in_background(make_service, store):
    service = make_service(ScriptedLLMClient(completions=[DONE]))

    session = await service.create_session(TEST_USER_ID, "watch", "Keep staging green")

    task = service.launch_session(session.id)
    result = await task

    assert result.status == "completed"
    assert (await store.get_session(session.id)).status == SessionStatus.COMPLETED
    assert not service.session_running(session.id)


async def test_stop_cancels_running_sessions(make_service, store):
    class SlowLLM(ScriptedLLMClient):
        async def complete(self, system, prompt, max_tokens=1024, model=None):
            await asyncio.sleep(30)
            return await super().complete(system, prompt, max_tokens, model)

    service = make_service(SlowLLM())
    await service.start(workers=False)
    session = await service.create_session(TEST_USER_ID, "watch", "Keep staging green")
    await asyncio.sleep(0)
    assert service.session_running(session.id)

    await service.stop()

    assert not service.session_running(session.id)
