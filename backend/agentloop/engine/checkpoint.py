"""CheckpointService: durable resume points for long-running jobs.

Design decisions:
  - Non-fatal save: all I/O is wrapped in try/except and logged with structlog.
    A failed checkpoint write must never fail the iteration that produced it.
  - Monotonic: a checkpoint whose step index is behind the latest one is skipped.
  - ``step_index`` on a checkpoint is the next step to execute, so restoring
    never replays work that was already checkpointed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog

from agentloop.schemas.jobs import Checkpoint, JobRecord, SubTaskType, ToolCallRecord
from agentloop.store.base import JobStore

logger = structlog.get_logger(__name__)


def should_checkpoint(iteration_number: int, interval: int, step_type: SubTaskType | None = None) -> bool:
    """Every ``interval`` iterations, and after any checkpoint-type plan step."""
    if step_type == SubTaskType.CHECKPOINT:
        return True
    return interval > 0 and iteration_number % interval == 0


class CheckpointService:
    def __init__(self, store: JobStore) -> None:
        self.store = store

    async def save(
        self,
        job: JobRecord,
        next_step_index: int,
        findings: dict[str, Any] | None = None,
        tool_results: list[ToolCallRecord] | None = None,
        summary: str | None = None,
        now: datetime | None = None,
    ) -> Checkpoint | None:
        """Persist a checkpoint for ``job``. Returns None when skipped or on failure."""
        bound = logger.bind(job_id=job.id, step_index=next_step_index)
        try:
            latest = await self.store.get_latest_checkpoint(job.id)
            if latest is not None and next_step_index < latest.step_index:
                bound.debug("checkpoint_skipped_not_monotonic", latest_step_index=latest.step_index)
                return None

            results = [
                {"tool_name": r.tool_name, "status": r.status.value, "output": r.output, "error": r.error}
                for r in tool_results or []
            ]
            checkpoint = Checkpoint(
                step_index=next_step_index,
                timestamp=now or datetime.now(UTC),
                findings={**(findings or {}), "tool_results": results},
                summary=summary
                or f"Checkpoint at step {next_step_index}: {len(results)} tool results captured",
            )
            await self.store.save_checkpoint(job.id, checkpoint)
            bound.info("checkpoint_saved", checkpoint_id=checkpoint.id)
            return checkpoint

        except Exception as exc:
            bound.warning(
                "checkpoint_save_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    async def restore(self, job_id: str) -> Checkpoint | None:
        """Latest checkpoint for ``job_id``, or None (also on read failure)."""
        bound = logger.bind(job_id=job_id)
        try:
            checkpoint = await self.store.get_latest_checkpoint(job_id)
            if checkpoint is not None:
                bound.debug("checkpoint_restored", step_index=checkpoint.step_index)
            else:
                bound.debug("checkpoint_not_found")
            return checkpoint
        except Exception as exc:
            bound.warning(
                "checkpoint_restore_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
