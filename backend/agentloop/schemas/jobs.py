"""Job domain records: plans, checkpoints, tool calls, iterations and summaries."""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from agentloop.queue.schemas import JobStatus
from agentloop.schemas.messages import ChatMessage


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class SubTaskType(StrEnum):
    TOOL_CALL = "tool-call"
    LLM_REASONING = "llm-reasoning"
    CHECKPOINT = "checkpoint"


class SubTaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SubTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    description: str = Field(min_length=1)
    type: SubTaskType
    status: SubTaskStatus = SubTaskStatus.PENDING
    estimated_duration: float | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("estimated_duration", "estimatedDuration"),
    )


class TaskPlan(BaseModel):
    """Ordered plan produced by the decomposer; always at least one step."""

    model_config = ConfigDict(populate_by_name=True)

    steps: list[SubTask] = Field(min_length=1)
    total_steps: int = Field(default=0, validation_alias=AliasChoices("total_steps", "totalSteps"))

    @model_validator(mode="after")
    def _fill_defaults(self) -> "TaskPlan":
        for i, step in enumerate(self.steps):
            if not step.id:
                step.id = f"step-{i + 1}"
        self.total_steps = len(self.steps)
        return self

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.steps if s.status == SubTaskStatus.COMPLETED)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.steps if s.status == SubTaskStatus.FAILED)


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


class Checkpoint(BaseModel):
    """Snapshot of findings; ``step_index`` is the next step to execute on resume."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_index: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)
    findings: dict[str, Any] = Field(default_factory=dict)
    summary: str = ""


class ToolCallStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class ToolCallRecord(BaseModel):
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    status: ToolCallStatus
    attempts: int = 1
    duration_ms: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime = Field(default_factory=_utcnow)


class JobRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    thread_id: str
    goal: str
    status: JobStatus = JobStatus.PENDING
    cancelled: bool = False
    # Set when the worker failed a step and the queue holds a retry for it
    awaiting_retry: bool = False
    model: str
    tool_choice: str = "auto"
    allowed_tools: list[str] | None = None
    current_iteration: int = 0
    max_iterations: int = 100
    step_index: int = 0
    retry_count: int = 0
    plan: TaskPlan | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    tool_call_history: list[ToolCallRecord] = Field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    error: str | None = None
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    @property
    def latest_checkpoint(self) -> Checkpoint | None:
        return self.checkpoints[-1] if self.checkpoints else None


class IterationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    iteration_number: int = Field(ge=1)
    step_index: int = Field(ge=0)
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    message_snapshot: list[ChatMessage] = Field(default_factory=list)
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    summary_id: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


class ContextSummaryRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    iteration_id: str | None = None
    summary_text: str
    messages_summarized: int
    token_count_before: int
    token_count_after: int
    created_at: datetime = Field(default_factory=_utcnow)
