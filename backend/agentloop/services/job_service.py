"""JobService: submission and control of long-running jobs.

Every control action goes through the job state machine, so a request that
races a worker is resolved by the version token rather than by whoever
writes last.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from redis.exceptions import RedisError

from agentloop.core.config import Settings, get_settings
from agentloop.core.exceptions import InvalidTransitionError, JobNotFoundError, QueueError
from agentloop.domain.progress import compute_job_progress, estimate_completion_time, task_summary
from agentloop.engine.decomposer import TaskDecomposer
from agentloop.engine.tools import ToolRegistry
from agentloop.queue.job_queue import JobQueue
from agentloop.queue.schemas import TERMINAL_STATUSES, JobStatus, StepMessage
from agentloop.queue.state_machine import JobStateMachine
from agentloop.schemas.jobs import IterationRecord, JobRecord, TaskPlan
from agentloop.schemas.messages import ChatMessage
from agentloop.store.base import JobStore

logger = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


@dataclass
class JobStatusView:
    job: JobRecord
    progress: int
    summary: str
    estimated_completion: datetime | None


class JobService:
    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        state_machine: JobStateMachine,
        decomposer: TaskDecomposer,
        tools: ToolRegistry,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.state_machine = state_machine
        self.decomposer = decomposer
        self.tools = tools
        self.settings = settings or get_settings()

    async def submit(
        self,
        user_id: str,
        goal: str,
        thread_id: str | None = None,
        model: str | None = None,
        tool_choice: str = "auto",
        allowed_tools: list[str] | None = None,
        max_iterations: int | None = None,
        orchestrate: bool | None = None,
        plan: TaskPlan | None = None,
    ) -> JobRecord:
        """Create a job and enqueue its first step.

        ``orchestrate=None`` lets the model decide whether the goal needs a
        plan; an explicit ``plan`` skips decomposition entirely.
        """
        if plan is None:
            if orchestrate is None:
                orchestrate = await self.decomposer.should_orchestrate(goal)
            if orchestrate:
                plan = await self.decomposer.decompose_goal(goal, self.tools.capabilities())

        job = await self.store.create_job(
            JobRecord(
                user_id=user_id,
                thread_id=thread_id or str(uuid.uuid4()),
                goal=goal,
                model=model or self.settings.default_model,
                tool_choice=tool_choice,
                allowed_tools=allowed_tools,
                max_iterations=max_iterations or self.settings.max_iterations,
                plan=plan,
                messages=[ChatMessage.from_text("user", goal)],
            )
        )
        await self._enqueue(StepMessage(job_id=job.id, user_id=user_id, thread_id=job.thread_id, step_index=0))
        logger.info(
            "job_submitted",
            job_id=job.id,
            user_id=user_id,
            orchestrated=plan is not None,
            total_steps=plan.total_steps if plan else None,
        )
        return job

    async def get_job(self, job_id: str, user_id: str) -> JobRecord:
        job = await self.store.get_job(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job

    async def get_status(self, job_id: str, user_id: str) -> JobStatusView:
        job = await self.get_job(job_id, user_id)
        return JobStatusView(
            job=job,
            progress=compute_job_progress(job),
            summary=task_summary(job),
            estimated_completion=estimate_completion_time(job) if job.status not in TERMINAL_STATUSES else None,
        )

    async def list_iterations(self, job_id: str, user_id: str) -> list[IterationRecord]:
        await self.get_job(job_id, user_id)
        return await self.store.list_iterations(job_id)

    async def pause(self, job_id: str, user_id: str) -> JobRecord:
        """Pause a job. A job failed by the worker can be paused while its retry is pending."""
        job = await self.get_job(job_id, user_id)
        updated = await self.state_machine.transition(
            job_id,
            JobStatus.PAUSED,
            "Paused by user",
            changes={"awaiting_retry": False},
            when=lambda current: current.status != JobStatus.FAILED or _retry_pending(current),
        )
        if updated is None:
            current = await self.get_job(job_id, user_id)
            raise InvalidTransitionError(current.status.value, JobStatus.PAUSED.value)
        logger.info("job_paused", job_id=job_id, previous=job.status.value)
        return updated

    async def cancel(self, job_id: str, user_id: str) -> JobRecord:
        """Drop queued steps and fail the job. An in-flight step finishes, then stops.

        A job the worker failed is still cancellable while its queue retry is
        pending; the retry is dropped with the other messages.
        """
        job = await self.get_job(job_id, user_id)
        if job.cancelled or job.status == JobStatus.COMPLETED or (
            job.status == JobStatus.FAILED and not _retry_pending(job)
        ):
            raise InvalidTransitionError(job.status.value, "cancelled")

        removed = await self.queue.remove_job_messages(job_id)
        changes = {"error": CANCELLED_MESSAGE, "cancelled": True, "awaiting_retry": False}
        updated = await self.state_machine.transition(
            job_id, JobStatus.FAILED, CANCELLED_MESSAGE, changes=changes, when=lambda current: not current.cancelled
        )
        if updated is None:
            # Already failed by the worker: mark it cancelled in place
            updated = await self.state_machine.update_if(job_id, changes, when=_retry_pending, message=CANCELLED_MESSAGE)
        if updated is None:
            current = await self.get_job(job_id, user_id)
            raise InvalidTransitionError(current.status.value, "cancelled")
        logger.info("job_cancelled", job_id=job_id, removed_messages=removed)
        return updated

    async def resume(self, job_id: str, user_id: str) -> JobRecord:
        """Restart a paused or failed job from its current step (or its latest checkpoint)."""
        job = await self.get_job(job_id, user_id)
        if job.cancelled or job.status not in (JobStatus.PAUSED, JobStatus.FAILED):
            raise InvalidTransitionError(job.status.value, JobStatus.RUNNING.value)

        updated = await self.state_machine.transition(
            job_id, JobStatus.RUNNING, "Resumed by user", changes={"error": None, "awaiting_retry": False}
        )
        if updated is None:
            current = await self.get_job(job_id, user_id)
            raise InvalidTransitionError(current.status.value, JobStatus.RUNNING.value)

        enqueued = await self._enqueue(
            StepMessage(
                job_id=job_id,
                user_id=updated.user_id,
                thread_id=updated.thread_id,
                step_index=updated.step_index,
            )
        )
        logger.info("job_resumed", job_id=job_id, step_index=updated.step_index, enqueued=enqueued)
        return updated

    async def _enqueue(self, message: StepMessage) -> bool:
        """Enqueue a step; a broker failure fails the job so the error is visible.

        Raises:
            QueueError: Redis rejected or could not take the message.
        """
        try:
            return await self.queue.enqueue(message)
        except RedisError as exc:
            error = f"Queue unavailable: {exc}"
            logger.error(
                "job_enqueue_failed",
                job_id=message.job_id,
                step_index=message.step_index,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self.state_machine.transition(message.job_id, JobStatus.FAILED, error, changes={"error": error})
            raise QueueError(error) from exc


def _retry_pending(job: JobRecord) -> bool:
    """True for a job the worker failed whose queue retry has not run yet."""
    return job.status == JobStatus.FAILED and job.awaiting_retry and not job.cancelled
