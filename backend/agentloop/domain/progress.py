"""Deterministic job progress functions.

Pure functions with no external dependencies beyond the job record.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from agentloop.queue.schemas import JobStatus
from agentloop.schemas.jobs import JobRecord

DEFAULT_STEP_DURATION_SECONDS = 30.0


@dataclass(frozen=True)
class ContinuationDecision:
    should_continue: bool
    reason: str
    # Set when the job must be failed rather than just stopped
    fail: bool = False


def evaluate_continuation(job: JobRecord, retry_ceiling: int = 5) -> ContinuationDecision:
    """Decide whether ``job`` may execute another step.

    Checked in order: all plan steps done, job completed, job failed, job paused or cancelled,
    retry count past the ceiling.

    Pure function -- deterministic, no side effects.
    """
    if job.plan is not None and job.step_index >= job.plan.total_steps:
        return ContinuationDecision(False, "All steps completed")

    if job.status == JobStatus.COMPLETED:
        return ContinuationDecision(False, "Task completed")

    if job.status == JobStatus.FAILED:
        return ContinuationDecision(False, "Task failed")

    if job.status == JobStatus.PAUSED or job.cancelled:
        return ContinuationDecision(False, "Job paused")

    if job.retry_count > retry_ceiling:
        return ContinuationDecision(False, "Maximum retry count exceeded", fail=True)

    return ContinuationDecision(True, "More steps to execute")


def compute_job_progress(job: JobRecord) -> int:
    """Integer percentage 0-100 of plan steps executed; 100 for a completed free-form job."""
    if job.plan is None or job.plan.total_steps == 0:
        return 100 if job.status == JobStatus.COMPLETED else 0
    return int(min(job.step_index, job.plan.total_steps) / job.plan.total_steps * 100)


def estimate_completion_time(job: JobRecord, now: datetime | None = None) -> datetime | None:
    """Projected finish time from the remaining steps' estimates (30s per step by default).

    Returns None for free-form jobs, which have no plan to project from.
    """
    if job.plan is None:
        return None
    now = now or datetime.now(UTC)
    remaining = job.plan.steps[job.step_index :]
    seconds = sum(step.estimated_duration or DEFAULT_STEP_DURATION_SECONDS for step in remaining)
    return now + timedelta(seconds=seconds)


def task_summary(job: JobRecord) -> str:
    """Human-readable one-line progress, e.g. ``Job abc: running (50% complete - step 2/4: Fetch data)``."""
    total = job.plan.total_steps if job.plan else 0
    progress = compute_job_progress(job)
    current = job.plan.steps[job.step_index] if job.plan and job.step_index < total else None
    step_label = f": {current.description}" if current else ""
    if total == 0:
        return f"Job {job.id}: {job.status.value} ({progress}% complete - iteration {job.current_iteration})"
    step_number = min(job.step_index + 1, total)
    return f"Job {job.id}: {job.status.value} ({progress}% complete - step {step_number}/{total}{step_label})"
