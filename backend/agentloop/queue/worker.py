"""WorkerPool: pulls step messages from the queue and runs them through the engine.

Steps per message:
1. Claim the oldest due message
2. Wait for a slot under the global rate limit (shared across processes via Redis)
3. Run it through ``IterationEngine.process_step``
4. Ack on success; on failure mark the job failed, persist the error and let
   the queue schedule a backoff retry (or park the message for operators)
5. A message whose job record is missing is discarded without retry

Concurrency is a fixed number of worker tasks, each handling one message at
a time. Nothing starts until ``start()`` is called.
"""

from __future__ import annotations

import asyncio
import time
import uuid

import structlog

from agentloop.core.exceptions import JobNotFoundError, RetryLimitExceededError
from agentloop.engine.iteration import IterationEngine, StepOutcome
from agentloop.queue.job_queue import JobQueue
from agentloop.queue.rate_limiter import RateLimiter
from agentloop.queue.schemas import ClaimedMessage, JobStatus, MessageState
from agentloop.queue.state_machine import JobStateMachine

logger = structlog.get_logger(__name__)


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        engine: IterationEngine,
        state_machine: JobStateMachine,
        rate_limiter: RateLimiter | None = None,
        concurrency: int = 5,
        poll_interval: float = 0.5,
        visibility_timeout: float = 900.0,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self.queue = queue
        self.engine = engine
        self.state_machine = state_machine
        self.rate_limiter = rate_limiter
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self.shutdown_timeout = shutdown_timeout
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        requeued = await self.queue.requeue_stale(self.visibility_timeout)
        if requeued:
            logger.warning("worker_pool_requeued_stale", count=requeued)
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"agentloop-worker-{i}") for i in range(self.concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Let in-flight messages finish (up to ``shutdown_timeout``), then cancel."""
        if not self._tasks:
            return
        self._stopping.set()
        done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool_stopped", cancelled=len(pending))

    async def _run(self, worker_id: int) -> None:
        bound = logger.bind(worker_id=worker_id)
        while not self._stopping.is_set():
            try:
                processed = await self.process_next()
            except Exception as exc:
                # Broker trouble: back off and keep the worker alive
                bound.error("worker_loop_error", error=str(exc), error_type=type(exc).__name__, exc_info=True)
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass

    async def process_next(self) -> bool:
        """Claim and process one message. Returns False when nothing was due."""
        await self.queue.promote_delayed()
        claimed = await self.queue.claim()
        if claimed is None:
            return False
        # Only real work spends a rate-limit slot
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        await self.handle(claimed)
        return True

    async def handle(self, claimed: ClaimedMessage) -> StepOutcome | None:
        message = claimed.message
        bound = logger.bind(job_id=message.job_id, step_index=message.step_index, attempts=claimed.attempts)
        start = time.monotonic()

        try:
            outcome = await self.engine.process_step(message)
        except JobNotFoundError:
            bound.error("step_job_missing_discarded")
            await self.queue.discard(claimed.key)
            return None
        except asyncio.CancelledError:
            # Shutdown mid-step: the message stays active and is requeued on next start
            bound.warning("step_interrupted")
            raise
        except Exception as exc:
            debug_id = str(uuid.uuid4())
            error = f"{type(exc).__name__}: {str(exc)[:500]}"
            bound.error(
                "step_failed",
                debug_id=debug_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            await self._fail_job(message.job_id, error, debug_id)
            state = await self.queue.fail(claimed.key, error)
            if state == MessageState.FAILED:
                parked = RetryLimitExceededError(claimed.key, claimed.attempts)
                bound.error("step_parked_after_max_attempts", error=str(parked))
                await self._record_error(message.job_id, f"{parked}. Last error: {error}")
            return None

        await self.queue.ack(claimed.key)
        bound.info(
            "step_processed",
            action=outcome.action,
            reason=outcome.reason,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return outcome

    async def _fail_job(self, job_id: str, error: str, debug_id: str) -> None:
        """Fail a running job and mark it for the queue retry.

        A job the user paused meanwhile stays paused with the error recorded,
        and a cancelled job is left alone, so the retry finds it stopped.
        """
        try:
            failed = await self.state_machine.transition(
                job_id,
                JobStatus.FAILED,
                f"Step failed (debug_id: {debug_id}). Retrying.",
                changes={"error": error, "awaiting_retry": True},
                when=lambda job: job.status in (JobStatus.PENDING, JobStatus.RUNNING) and not job.cancelled,
            )
            if failed is None:
                await self.state_machine.update_if(
                    job_id, {"error": error}, when=lambda job: job.status == JobStatus.PAUSED and not job.cancelled
                )
        except JobNotFoundError:
            logger.error("step_failed_job_missing", job_id=job_id)

    async def _record_error(self, job_id: str, error: str) -> None:
        try:
            await self.state_machine.update_if(
                job_id, {"error": error, "awaiting_retry": False}, when=lambda job: not job.cancelled
            )
        except JobNotFoundError:
            logger.error("step_parked_job_missing", job_id=job_id)
