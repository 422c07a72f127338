"""JobQueue: durable at-least-once step queue on Redis sorted sets.

Layout (all keys under ``agentloop:queue:``):

- ``waiting``  ZSET key -> FIFO counter (ready to claim)
- ``delayed``  ZSET key -> due unix time (continuations and retry backoff)
- ``active``   ZSET key -> claim unix time (held by a worker)
- ``failed``   ZSET key -> park unix time (attempts exhausted, operator-visible)
- ``msg:{key}``   HASH payload / attempts / last_error
- ``guard:{key}`` STRING set NX while the message is live; enforces one copy per job step
- ``job:{job_id}`` SET of live message keys for cancellation
"""

import json
import time

import structlog
from redis.asyncio import Redis

from agentloop.queue.schemas import (
    ClaimedMessage,
    FailedMessage,
    MessageState,
    StepMessage,
)

logger = structlog.get_logger(__name__)


class JobQueue:
    """Step-message queue with dedupe, delayed scheduling, backoff and a failed set.

    Backoff after the n-th failed attempt is ``backoff_base * 2 ** (n - 1)``
    seconds; after ``max_attempts`` attempts the message is parked, never dropped.
    """

    PREFIX = "agentloop:queue"

    def __init__(
        self,
        redis: Redis,
        max_attempts: int = 5,
        backoff_base: float = 5.0,
    ):
        self.redis = redis
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base

        self.waiting_key = f"{self.PREFIX}:waiting"
        self.delayed_key = f"{self.PREFIX}:delayed"
        self.active_key = f"{self.PREFIX}:active"
        self.failed_key = f"{self.PREFIX}:failed"
        self.counter_key = f"{self.PREFIX}:counter"

    def _msg_key(self, key: str) -> str:
        return f"{self.PREFIX}:msg:{key}"

    def _guard_key(self, key: str) -> str:
        return f"{self.PREFIX}:guard:{key}"

    def _job_index_key(self, job_id: str) -> str:
        return f"{self.PREFIX}:job:{job_id}"

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, message: StepMessage, delay: float = 0.0, now: float | None = None) -> bool:
        """Add a step message, optionally delayed.

        Returns False (and changes nothing) when a message with the same key is
        already waiting, delayed or active.
        """
        now = now if now is not None else time.time()
        key = message.key

        acquired = await self.redis.set(self._guard_key(key), "1", nx=True)
        if not acquired:
            logger.debug("step_enqueue_duplicate", key=key)
            return False

        counter = await self.redis.incr(self.counter_key)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._msg_key(key),
                mapping={"payload": message.model_dump_json(), "attempts": 0, "last_error": ""},
            )
            pipe.zrem(self.failed_key, key)
            pipe.sadd(self._job_index_key(message.job_id), key)
            if delay > 0:
                pipe.zadd(self.delayed_key, {key: now + delay})
            else:
                pipe.zadd(self.waiting_key, {key: counter})
            await pipe.execute()

        logger.debug("step_enqueued", key=key, delay=delay)
        return True

    async def promote_delayed(self, now: float | None = None) -> int:
        """Move due delayed messages to waiting. Returns how many moved."""
        now = now if now is not None else time.time()
        due = await self.redis.zrangebyscore(self.delayed_key, "-inf", now)
        promoted = 0
        for key in due:
            # zrem is the claim: only one promoter wins per key
            if await self.redis.zrem(self.delayed_key, key):
                counter = await self.redis.incr(self.counter_key)
                await self.redis.zadd(self.waiting_key, {key: counter})
                promoted += 1
        return promoted

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def claim(self, now: float | None = None) -> ClaimedMessage | None:
        """Pop the oldest ready message, mark it active and count the attempt."""
        now = now if now is not None else time.time()
        await self.promote_delayed(now)

        result = await self.redis.zpopmin(self.waiting_key, count=1)
        if not result:
            return None

        key, _score = result[0]
        payload = await self.redis.hget(self._msg_key(key), "payload")
        if payload is None:
            # Hash vanished (discarded concurrently); drop the orphan key
            logger.warning("step_payload_missing", key=key)
            await self.redis.delete(self._guard_key(key))
            return None

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self.active_key, {key: now})
            pipe.hincrby(self._msg_key(key), "attempts", 1)
            _, attempts = await pipe.execute()

        message = StepMessage.model_validate_json(payload)
        # Redeliveries carry their retry number so the engine can restore a failed job
        message = message.model_copy(update={"retry_count": max(message.retry_count, int(attempts) - 1)})
        return ClaimedMessage(key=key, message=message, attempts=int(attempts))

    async def ack(self, key: str) -> None:
        """Finish an active message."""
        payload = await self.redis.hget(self._msg_key(key), "payload")
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, key)
            pipe.delete(self._msg_key(key))
            pipe.delete(self._guard_key(key))
            if payload is not None:
                pipe.srem(self._job_index_key(StepMessage.model_validate_json(payload).job_id), key)
            await pipe.execute()

    async def fail(self, key: str, error: str, now: float | None = None) -> MessageState:
        """Record a failed attempt.

        Returns ``MessageState.DELAYED`` when a retry was scheduled, or
        ``MessageState.FAILED`` when the message was parked.
        """
        now = now if now is not None else time.time()
        raw_attempts = await self.redis.hget(self._msg_key(key), "attempts")
        attempts = int(raw_attempts) if raw_attempts else 0

        if attempts < self.max_attempts:
            delay = self.backoff_base * 2 ** max(attempts - 1, 0)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self.active_key, key)
                pipe.hset(self._msg_key(key), "last_error", error)
                pipe.zadd(self.delayed_key, {key: now + delay})
                await pipe.execute()
            logger.warning("step_retry_scheduled", key=key, attempts=attempts, delay=delay, error=error)
            return MessageState.DELAYED

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.active_key, key)
            pipe.hset(self._msg_key(key), mapping={"last_error": error, "failed_at": now})
            pipe.zadd(self.failed_key, {key: now})
            # Parked messages no longer block a fresh enqueue of the same step
            pipe.delete(self._guard_key(key))
            await pipe.execute()
        logger.error("step_parked", key=key, attempts=attempts, error=error)
        return MessageState.FAILED

    async def discard(self, key: str) -> None:
        """Drop a message without retry (fatal errors and cancellation)."""
        payload = await self.redis.hget(self._msg_key(key), "payload")
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.waiting_key, key)
            pipe.zrem(self.delayed_key, key)
            pipe.zrem(self.active_key, key)
            pipe.delete(self._msg_key(key))
            pipe.delete(self._guard_key(key))
            if payload is not None:
                pipe.srem(self._job_index_key(StepMessage.model_validate_json(payload).job_id), key)
            await pipe.execute()

    async def requeue_stale(self, visibility_timeout: float, now: float | None = None) -> int:
        """Return active messages older than ``visibility_timeout`` to waiting.

        Recovers steps held by a worker process that died mid-iteration.
        """
        now = now if now is not None else time.time()
        stale = await self.redis.zrangebyscore(self.active_key, "-inf", now - visibility_timeout)
        recovered = 0
        for key in stale:
            if await self.redis.zrem(self.active_key, key):
                counter = await self.redis.incr(self.counter_key)
                await self.redis.zadd(self.waiting_key, {key: counter})
                recovered += 1
                logger.warning("step_recovered_from_stale_worker", key=key)
        return recovered

    # ------------------------------------------------------------------
    # Cancellation and operator tooling
    # ------------------------------------------------------------------

    async def remove_job_messages(self, job_id: str) -> int:
        """Discard a job's waiting and delayed messages. Active ones finish cooperatively."""
        removed = 0
        for key in await self.redis.smembers(self._job_index_key(job_id)):
            state = await self.get_message_state(key)
            if state in (MessageState.WAITING, MessageState.DELAYED):
                await self.discard(key)
                removed += 1
        return removed

    async def get_message_state(self, key: str) -> MessageState | None:
        for state, zset in (
            (MessageState.ACTIVE, self.active_key),
            (MessageState.WAITING, self.waiting_key),
            (MessageState.DELAYED, self.delayed_key),
            (MessageState.FAILED, self.failed_key),
        ):
            if await self.redis.zscore(zset, key) is not None:
                return state
        return None

    async def list_failed(self) -> list[FailedMessage]:
        failed: list[FailedMessage] = []
        for key, failed_at in await self.redis.zrange(self.failed_key, 0, -1, withscores=True):
            data = await self.redis.hgetall(self._msg_key(key))
            if not data:
                continue
            failed.append(
                FailedMessage(
                    key=key,
                    message=StepMessage.model_validate(json.loads(data["payload"])),
                    attempts=int(data.get("attempts", 0)),
                    error=data.get("last_error", ""),
                    failed_at=failed_at,
                )
            )
        return failed

    async def retry_failed(self, key: str) -> bool:
        """Re-drive a parked message with a fresh attempt budget."""
        if await self.redis.zscore(self.failed_key, key) is None:
            return False
        payload = await self.redis.hget(self._msg_key(key), "payload")
        if payload is None:
            await self.redis.zrem(self.failed_key, key)
            return False
        await self.redis.zrem(self.failed_key, key)
        message = StepMessage.model_validate_json(payload)
        return await self.enqueue(message.model_copy(update={"retry_count": max(message.retry_count, 1)}))

    async def counts(self) -> dict[str, int]:
        return {
            MessageState.WAITING.value: await self.redis.zcard(self.waiting_key),
            MessageState.DELAYED.value: await self.redis.zcard(self.delayed_key),
            MessageState.ACTIVE.value: await self.redis.zcard(self.active_key),
            MessageState.FAILED.value: await self.redis.zcard(self.failed_key),
        }
