"""Tests for JobService: submission, orchestration choice and user control actions."""

import json
import time
from unittest.mock import AsyncMock

import pytest
from factories import OTHER_USER_ID, TEST_USER_ID, make_job, make_plan
from redis.exceptions import ConnectionError as RedisConnectionError

from agentloop.core.exceptions import InvalidTransitionError, JobNotFoundError, QueueError
from agentloop.engine.fake_llm import ScriptedLLMClient, ScriptedTurn
from agentloop.queue.schemas import JobStatus, MessageState, message_key

pytestmark = pytest.mark.unit

PLAN_JSON = json.dumps(
    {"steps": [{"description": "Gather", "type": "tool-call"}, {"description": "Write", "type": "llm-reasoning"}]}
)


async def test_submit_free_form_enqueues_first_step(make_service):
    service = make_service(ScriptedLLMClient())

    job = await service.jobs.submit(TEST_USER_ID, "Say hello", orchestrate=False, max_iterations=7)

    assert job.status == JobStatus.PENDING
    assert job.plan is None
    assert job.max_iterations == 7
    assert job.model == "claude-sonnet-4-20250514"
    assert [m.text for m in job.messages] == ["Say hello"]
    assert await service.queue.get_message_state(message_key(job.id, 0)) == MessageState.WAITING


async def test_submit_asks_model_whether_to_plan(make_service):
    llm = ScriptedLLMClient(completions=["YES", PLAN_JSON])
    service = make_service(llm)

    job = await service.jobs.submit(TEST_USER_ID, "Research and write a report")

    assert job.plan.total_steps == 2
    assert [s.description for s in job.plan.steps] == ["Gather", "Write"]
    assert len(llm.prompts) == 2


async def test_submit_with_explicit_plan_skips_model(make_service):
    llm = ScriptedLLMClient()
    service = make_service(llm)

    job = await service.jobs.submit(TEST_USER_ID, "Two things", plan=make_plan("one", "two"))

    assert job.plan.total_steps == 2
    assert llm.prompts == []


async def test_submit_fails_job_when_queue_is_down(make_service, store):
    service = make_service(ScriptedLLMClient())
    service.jobs.queue = AsyncMock()
    service.jobs.queue.enqueue.side_effect = RedisConnectionError("connection refused")

    with pytest.raises(QueueError, match="Queue unavailable"):
        await service.jobs.submit(TEST_USER_ID, "Say hello", orchestrate=False)

    [job] = list(store._jobs.values())
    assert job.status == JobStatus.FAILED
    assert job.error == "Queue unavailable: connection refused"


async def test_get_status_hides_other_users_jobs(make_service, store):
    service = make_service(ScriptedLLMClient())
    job = await store.create_job(make_job(plan=make_plan("a", "b"), status=JobStatus.RUNNING, step_index=1))

    view = await service.jobs.get_status(job.id, TEST_USER_ID)
    assert view.progress == 50
    assert view.summary.startswith(f"Job {job.id}: running (50% complete - step 2/2")
    assert view.estimated_completion is not None

    with pytest.raises(JobNotFoundError):
        await service.jobs.get_status(job.id, OTHER_USER_ID)


async def test_pause_and_resume(make_service, store):
    service = make_service(ScriptedLLMClient())
    job = await store.create_job(make_job(plan=make_plan("a", "b"), status=JobStatus.RUNNING, step_index=1))

    paused = await service.jobs.pause(job.id, TEST_USER_ID)
    assert paused.status == JobStatus.PAUSED

    with pytest.raises(InvalidTransitionError):
        await service.jobs.pause(job.id, TEST_USER_ID)

    resumed = await service.jobs.resume(job.id, TEST_USER_ID)
    assert resumed.status == JobStatus.RUNNING
    assert await service.queue.get_message_state(message_key(job.id, 1)) == MessageState.WAITING


async def test_resume_rejects_running_and_completed(make_service, store):
    service = make_service(ScriptedLLMClient())
    running = await store.create_job(make_job(status=JobStatus.RUNNING))
    done = await store.create_job(make_job(status=JobStatus.COMPLETED))

    for job in (running, done):
        with pytest.raises(InvalidTransitionError):
            await service.jobs.resume(job.id, TEST_USER_ID)


async def test_cancel_drops_queued_steps_and_blocks_resume(make_service, store):
    service = make_service(ScriptedLLMClient())
    job = await service.jobs.submit(TEST_USER_ID, "Say hello", orchestrate=False)

    cancelled = await service.jobs.cancel(job.id, TEST_USER_ID)

    assert cancelled.status == JobStatus.FAILED
    assert cancelled.cancelled is True
    assert cancelled.error == "Cancelled by user"
    assert await service.queue.get_message_state(message_key(job.id, 0)) is None
    with pytest.raises(InvalidTransitionError):
        await service.jobs.cancel(job.id, TEST_USER_ID)
    with pytest.raises(InvalidTransitionError):
        await service.jobs.resume(job.id, TEST_USER_ID)


async def test_list_iterations_checks_owner(make_service):
    service = make_service(ScriptedLLMClient())
    job = await service.jobs.submit(TEST_USER_ID, "Say hello", orchestrate=False)
    await service.workers.process_next()

    iterations = await service.jobs.list_iterations(job.id, TEST_USER_ID)
    assert [i.iteration_number for i in iterations] == [1]

    with pytest.raises(JobNotFoundError):
        await service.jobs.list_iterations(job.id, OTHER_USER_ID)


async def _fail_first_step(service, store):
    job = await service.jobs.submit(TEST_USER_ID, "Say hello", orchestrate=False)
    await service.workers.process_next()
    failed = await store.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.awaiting_retry is True
    assert await service.queue.get_message_state(message_key(job.id, 0)) == MessageState.DELAYED
    return failed


async def test_cancel_during_retry_backoff_drops_the_retry(make_service, store):
    llm = ScriptedLLMClient(turns=[ScriptedTurn(error=RuntimeError("overloaded"))])
    service = make_service(llm)
    job = await _fail_first_step(service, store)

    cancelled = await service.jobs.cancel(job.id, TEST_USER_ID)

    assert cancelled.status == JobStatus.FAILED
    assert cancelled.cancelled is True
    assert cancelled.awaiting_retry is False
    assert cancelled.error == "Cancelled by user"
    assert await service.queue.get_message_state(message_key(job.id, 0)) is None
    assert await service.queue.claim(now=time.time() + 60) is None
    assert len(llm.requests) == 1
    with pytest.raises(InvalidTransitionError):
        await service.jobs.cancel(job.id, TEST_USER_ID)


async def test_pause_during_retry_backoff_holds_the_job(make_service, store):
    llm = ScriptedLLMClient(turns=[ScriptedTurn(error=RuntimeError("overloaded"))])
    service = make_service(llm)
    job = await _fail_first_step(service, store)

    paused = await service.jobs.pause(job.id, TEST_USER_ID)
    assert paused.status == JobStatus.PAUSED
    assert paused.awaiting_retry is False

    # The retry still arrives, but finds the job paused and stops
    claimed = await service.queue.claim(now=time.time() + 60)
    outcome = await service.workers.handle(claimed)
    assert outcome.reason == "Job paused"
    assert (await store.get_job(job.id)).status == JobStatus.PAUSED
    assert len(llm.requests) == 1

    resumed = await service.jobs.resume(job.id, TEST_USER_ID)
    assert resumed.status == JobStatus.RUNNING
    assert await service.queue.get_message_state(message_key(job.id, 0)) == MessageState.WAITING


async def test_pause_and_cancel_reject_a_job_that_failed_for_good(make_service, store):
    service = make_service(ScriptedLLMClient())
    job = await store.create_job(make_job(status=JobStatus.FAILED, error="Maximum retry count exceeded"))

    with pytest.raises(InvalidTransitionError):
        await service.jobs.pause(job.id, TEST_USER_ID)
    with pytest.raises(InvalidTransitionError):
        await service.jobs.cancel(job.id, TEST_USER_ID)
