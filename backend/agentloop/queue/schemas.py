"""Queue schemas: job lifecycle states and the step message envelope."""

from enum import Enum

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class MessageState(str, Enum):
    """Where a step message currently lives in the queue."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    FAILED = "failed"


def message_key(job_id: str, step_index: int) -> str:
    """Dedupe identity of a step message: at most one live copy per job and step."""
    return f"{job_id}:step:{step_index}"


class StepMessage(BaseModel):
    """Unit of work consumed by the worker pool."""

    job_id: str
    user_id: str
    thread_id: str
    step_index: int = Field(ge=0)
    retry_count: int = 0

    @property
    def key(self) -> str:
        return message_key(self.job_id, self.step_index)


class ClaimedMessage(BaseModel):
    """A message handed to a worker, with its delivery attempt number (1-based)."""

    key: str
    message: StepMessage
    attempts: int


class FailedMessage(BaseModel):
    """A message parked after exhausting its attempts, kept for operators."""

    key: str
    message: StepMessage
    attempts: int
    error: str
    failed_at: float  # unix seconds
