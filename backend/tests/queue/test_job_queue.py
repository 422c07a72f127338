"""Tests for JobQueue: dedupe, ordering, delayed delivery, backoff and parking."""

import pytest

from agentloop.queue.job_queue import JobQueue
from agentloop.queue.schemas import MessageState, StepMessage, message_key

pytestmark = pytest.mark.unit

NOW = 1_700_000_000.0


def _msg(job_id: str = "job-a", step_index: int = 0, retry_count: int = 0) -> StepMessage:
    return StepMessage(
        job_id=job_id,
        user_id="test-user-001",
        thread_id="thread-001",
        step_index=step_index,
        retry_count=retry_count,
    )


@pytest.fixture
def queue(redis):
    return JobQueue(redis, max_attempts=3, backoff_base=5.0)


class TestEnqueue:
    async def test_duplicate_step_is_rejected(self, queue):
        assert await queue.enqueue(_msg(), now=NOW) is True
        assert await queue.enqueue(_msg(), now=NOW) is False
        assert (await queue.counts())["waiting"] == 1

    async def test_duplicate_rejected_while_active(self, queue):
        await queue.enqueue(_msg(), now=NOW)
        await queue.claim(now=NOW)

        assert await queue.enqueue(_msg(), now=NOW) is False

    async def test_other_steps_of_same_job_are_accepted(self, queue):
        assert await queue.enqueue(_msg(step_index=0), now=NOW)
        assert await queue.enqueue(_msg(step_index=1), now=NOW)

    async def test_message_key_format(self):
        assert _msg("job-x", 3).key == message_key("job-x", 3) == "job-x:step:3"


class TestClaim:
    async def test_fifo_order(self, queue):
        await queue.enqueue(_msg("job-a"), now=NOW)
        await queue.enqueue(_msg("job-b"), now=NOW)

        first = await queue.claim(now=NOW)
        second = await queue.claim(now=NOW)

        assert (first.message.job_id, second.message.job_id) == ("job-a", "job-b")
        assert first.attempts == 1
        assert first.message.retry_count == 0
        assert await queue.claim(now=NOW) is None

    async def test_delayed_message_waits_until_due(self, queue):
        await queue.enqueue(_msg(), delay=10, now=NOW)

        assert await queue.claim(now=NOW + 9) is None
        assert await queue.get_message_state(_msg().key) == MessageState.DELAYED

        claimed = await queue.claim(now=NOW + 10)
        assert claimed.key == _msg().key
        assert await queue.get_message_state(claimed.key) == MessageState.ACTIVE

    async def test_ack_removes_message_and_guard(self, queue):
        await queue.enqueue(_msg(), now=NOW)
        claimed = await queue.claim(now=NOW)

        await queue.ack(claimed.key)

        assert await queue.get_message_state(claimed.key) is None
        assert await queue.counts() == {"waiting": 0, "delayed": 0, "active": 0, "failed": 0}
        assert await queue.enqueue(_msg(), now=NOW) is True


class TestFailure:
    async def test_failed_attempt_backs_off_exponentially(self, queue):
        await queue.enqueue(_msg(), now=NOW)
        claimed = await queue.claim(now=NOW)

        assert await queue.fail(claimed.key, "boom", now=NOW) == MessageState.DELAYED
        assert await queue.claim(now=NOW + 4.9) is None

        redelivered = await queue.claim(now=NOW + 5)
        assert redelivered.attempts == 2
        assert redelivered.message.retry_count == 1

        await queue.fail(redelivered.key, "boom again", now=NOW + 5)
        # Second failure waits base * 2
        assert await queue.claim(now=NOW + 14.9) is None
        assert (await queue.claim(now=NOW + 15)).attempts == 3

    async def test_message_is_parked_after_max_attempts(self, queue):
        await queue.enqueue(_msg(), now=NOW)
        t = NOW
        state = None
        for _ in range(3):
            claimed = await queue.claim(now=t)
            state = await queue.fail(claimed.key, "RuntimeError: model unavailable", now=t)
            t += 100

        assert state == MessageState.FAILED
        [parked] = await queue.list_failed()
        assert parked.key == _msg().key
        assert parked.attempts == 3
        assert parked.error == "RuntimeError: model unavailable"
        assert (await queue.counts())["failed"] == 1
        assert await queue.claim(now=t + 1000) is None

    async def test_retry_failed_redrives_with_fresh_attempts(self, queue):
        queue.max_attempts = 1
        await queue.enqueue(_msg(), now=NOW)
        claimed = await queue.claim(now=NOW)
        await queue.fail(claimed.key, "boom", now=NOW)

        assert await queue.retry_failed(claimed.key) is True

        redriven = await queue.claim(now=NOW)
        assert redriven.attempts == 1
        assert redriven.message.retry_count == 1
        assert await queue.list_failed() == []

    async def test_retry_failed_unknown_key(self, queue):
        assert await queue.retry_failed("job-z:step:0") is False


class TestRecoveryAndCancellation:
    async def test_requeue_stale_returns_abandoned_messages(self, queue):
        await queue.enqueue(_msg(), now=NOW)
        await queue.claim(now=NOW)

        assert await queue.requeue_stale(60, now=NOW + 30) == 0
        assert await queue.requeue_stale(60, now=NOW + 61) == 1

        assert await queue.get_message_state(_msg().key) == MessageState.WAITING
        reclaimed = await queue.claim(now=NOW + 62)
        assert reclaimed.attempts == 2

    async def test_remove_job_messages_drops_waiting_and_delayed(self, queue):
        await queue.enqueue(_msg("job-a", 0), now=NOW)
        await queue.enqueue(_msg("job-a", 1), delay=30, now=NOW)
        await queue.enqueue(_msg("job-b", 0), now=NOW)

        assert await queue.remove_job_messages("job-a") == 2

        assert await queue.counts() == {"waiting": 1, "delayed": 0, "active": 0, "failed": 0}
        assert (await queue.claim(now=NOW + 60)).message.job_id == "job-b"

    async def test_remove_job_messages_leaves_active_message(self, queue):
        await queue.enqueue(_msg("job-a", 0), now=NOW)
        claimed = await queue.claim(now=NOW)

        assert await queue.remove_job_messages("job-a") == 0
        assert await queue.get_message_state(claimed.key) == MessageState.ACTIVE

    async def test_discard(self, queue):
        await queue.enqueue(_msg(), delay=5, now=NOW)

        await queue.discard(_msg().key)

        assert await queue.get_message_state(_msg().key) is None
        assert await queue.enqueue(_msg(), now=NOW) is True
