"""Job state machine with versioned transitions and status-update events."""

from __future__ import annotations

from datetime import UTC, datetime
from collections.abc import Callable
from typing import Any

import structlog

from agentloop.core.exceptions import JobNotFoundError, StaleRecordError
from agentloop.events.publisher import EventPublisher, StreamEventType
from agentloop.queue.schemas import JobStatus
from agentloop.schemas.jobs import JobRecord
from agentloop.store.base import JobStore

logger = structlog.get_logger(__name__)


# Human-readable labels for status-update events
STATUS_LABELS: dict[str, str] = {
    "pending": "Queued",
    "running": "Working...",
    "paused": "Paused",
    "completed": "Completed",
    "failed": "Failed",
}


class JobStateMachine:
    """Validates and applies job status transitions.

    Each transition is a read-check-write guarded by the job's version token.
    If another writer (a user pause, a cancel) lands between the read and the
    write, the transition is re-validated against the fresh status, so a
    worker's "completed" can never overwrite a concurrent "paused".
    """

    TRANSITIONS = {
        JobStatus.PENDING: [JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.FAILED],
        JobStatus.RUNNING: [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED],
        JobStatus.PAUSED: [JobStatus.RUNNING, JobStatus.FAILED],
        JobStatus.FAILED: [JobStatus.RUNNING, JobStatus.PAUSED],  # retry, resume, or pause during backoff
        JobStatus.COMPLETED: [],  # Terminal state
    }

    MAX_CONFLICT_RETRIES = 3

    def __init__(self, store: JobStore, publisher: EventPublisher | None = None):
        self.store = store
        self.publisher = publisher

    def can_transition(self, current: JobStatus, target: JobStatus) -> bool:
        return target in self.TRANSITIONS.get(current, [])

    async def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        message: str = "",
        changes: dict[str, Any] | None = None,
        now: datetime | None = None,
        when: Callable[[JobRecord], bool] | None = None,
    ) -> JobRecord | None:
        """Move a job to ``new_status`` if allowed. Publishes a status-update on success.

        Args:
            job_id: Job identifier
            new_status: Target status
            message: Human-readable reason, included in the event
            changes: Extra fields written in the same versioned update
            now: Current time (for deterministic testing)
            when: Extra precondition, re-checked against every fresh read

        Returns:
            The updated job, or None if the transition is not allowed from the
            job's current status.

        Raises:
            JobNotFoundError: the job does not exist.
        """
        now = now or datetime.now(UTC)

        for _ in range(self.MAX_CONFLICT_RETRIES):
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            if not self.can_transition(job.status, new_status) or (when is not None and not when(job)):
                logger.info(
                    "job_transition_rejected",
                    job_id=job_id,
                    current=job.status.value,
                    target=new_status.value,
                )
                return None

            update = dict(changes or {})
            update["status"] = new_status
            if new_status == JobStatus.RUNNING and job.started_at is None:
                update["started_at"] = now
            if new_status in (JobStatus.COMPLETED, JobStatus.FAILED):
                update["completed_at"] = now
            elif new_status == JobStatus.RUNNING:
                update["completed_at"] = None

            try:
                updated = await self.store.update_job(job_id, update, expected_version=job.version)
            except StaleRecordError:
                logger.debug("job_transition_conflict", job_id=job_id, target=new_status.value)
                continue

            logger.info(
                "job_transitioned",
                job_id=job_id,
                previous=job.status.value,
                status=new_status.value,
            )
            await self._publish_status(updated, message, now)
            return updated

        logger.warning("job_transition_gave_up", job_id=job_id, target=new_status.value)
        return None

    async def update_if(
        self,
        job_id: str,
        changes: dict[str, Any],
        when: Callable[[JobRecord], bool],
        message: str = "",
    ) -> JobRecord | None:
        """Write ``changes`` without moving the status, only while ``when(job)`` holds.

        Same versioned read-check-write as ``transition``. A status-update is
        published only when ``message`` is given.
        """
        for _ in range(self.MAX_CONFLICT_RETRIES):
            job = await self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if not when(job):
                return None
            try:
                updated = await self.store.update_job(job_id, changes, expected_version=job.version)
            except StaleRecordError:
                logger.debug("job_update_conflict", job_id=job_id)
                continue
            if message:
                await self._publish_status(updated, message, datetime.now(UTC))
            return updated

        logger.warning("job_update_gave_up", job_id=job_id)
        return None

    async def _publish_status(self, job: JobRecord, message: str, now: datetime) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(
            job.id,
            {
                "type": StreamEventType.STATUS_UPDATE,
                "status": job.status.value,
                "label": STATUS_LABELS.get(job.status.value, job.status.value),
                "message": message,
                "iteration": job.current_iteration,
                "timestamp": now.isoformat(),
            },
        )

    async def get_status(self, job_id: str) -> JobStatus | None:
        job = await self.store.get_job(job_id)
        return job.status if job else None
