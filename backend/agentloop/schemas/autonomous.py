"""Autonomous session records and the structured outputs of each loop phase."""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionStatus(StrEnum):
    PLANNING = "planning"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class IterationPhase(StrEnum):
    EVALUATING = "evaluating"
    PLANNING = "planning"
    EXECUTING = "executing"
    OBSERVING = "observing"


class ObservationType(StrEnum):
    EVALUATION = "evaluation"
    PLANNING = "planning"
    EXECUTION = "execution"
    TOOL_CALL = "tool_call"
    ERROR = "error"
    USER_INTERVENTION = "user_intervention"


# ---------------------------------------------------------------------------
# Phase outputs (model-produced, always validated)
# ---------------------------------------------------------------------------


class ProgressEvaluation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    goal_achieved: bool = Field(validation_alias=AliasChoices("goal_achieved", "goalAchieved"))
    progress_percentage: float = Field(
        ge=0,
        le=100,
        validation_alias=AliasChoices("progress_percentage", "progressPercentage"),
    )
    blockers: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    should_continue: bool = Field(validation_alias=AliasChoices("should_continue", "shouldContinue"))


class ActionPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str = Field(min_length=1)
    rationale: str = ""
    expected_outcome: str = Field(
        default="",
        validation_alias=AliasChoices("expected_outcome", "expectedOutcome"),
    )


class ExecutionResult(BaseModel):
    success: bool
    output: str | None = None
    error: str | None = None
    tool_calls: int = 0


class LoopResult(BaseModel):
    success: bool
    status: Literal["completed", "paused", "failed", "max_iterations_reached"]
    message: str
    final_progress: float


# ---------------------------------------------------------------------------
# Durable records
# ---------------------------------------------------------------------------


class SessionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    name: str
    goal: str
    status: SessionStatus = SessionStatus.PLANNING
    max_iterations: int = 10
    current_iteration: int = 0
    progress_percentage: float = 0.0
    model: str
    tool_choice: str = "auto"
    allowed_tools: list[str] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime | None = None


class SessionIterationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    iteration_number: int = Field(ge=1)
    phase: IterationPhase = IterationPhase.EVALUATING
    evaluation: ProgressEvaluation | None = None
    plan: ActionPlan | None = None
    result: ExecutionResult | None = None
    duration_ms: int | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


class ObservationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    iteration_id: str | None = None
    type: ObservationType
    content: str
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata"),
    )
    created_at: datetime = Field(default_factory=_utcnow)
