"""Persistence contracts used by the engine, the worker pool and the control surface.

Two implementations satisfy these protocols:

- ``SqlStore`` (``agentloop.store.sql``): PostgreSQL via SQLAlchemy async.
- ``InMemoryStore`` (``agentloop.store.memory``): process-local, used in tests
  and for single-process development.

Both return pydantic records, never ORM rows, so callers can hold results
across session boundaries.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from agentloop.schemas.autonomous import (
    ObservationRecord,
    SessionIterationRecord,
    SessionRecord,
)
from agentloop.schemas.jobs import (
    Checkpoint,
    ContextSummaryRecord,
    IterationRecord,
    JobRecord,
    ToolCallRecord,
)


@runtime_checkable
class JobStore(Protocol):
    """Durable store for jobs and everything that hangs off them."""

    async def create_job(self, job: JobRecord) -> JobRecord: ...

    async def get_job(self, job_id: str) -> JobRecord | None: ...

    async def update_job(
        self,
        job_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> JobRecord:
        """Apply ``changes`` and bump ``version``.

        Raises:
            JobNotFoundError: no such job.
            StaleRecordError: ``expected_version`` given and not current.
        """
        ...

    async def insert_iteration(self, iteration: IterationRecord) -> IterationRecord: ...

    async def update_iteration(self, iteration_id: str, changes: dict[str, Any]) -> IterationRecord: ...

    async def get_iteration_for_step(self, job_id: str, step_index: int) -> IterationRecord | None: ...

    async def list_iterations(self, job_id: str) -> list[IterationRecord]: ...

    async def insert_context_summary(self, summary: ContextSummaryRecord) -> ContextSummaryRecord: ...

    async def save_checkpoint(self, job_id: str, checkpoint: Checkpoint) -> None: ...

    async def get_latest_checkpoint(self, job_id: str) -> Checkpoint | None: ...

    async def append_tool_calls(self, job_id: str, records: list[ToolCallRecord]) -> None: ...


@runtime_checkable
class SessionStore(Protocol):
    """Durable store for autonomous sessions, their iterations and observations."""

    async def create_session(self, session: SessionRecord) -> SessionRecord: ...

    async def get_session(self, session_id: str, user_id: str | None = None) -> SessionRecord | None: ...

    async def update_session(self, session_id: str, changes: dict[str, Any]) -> SessionRecord: ...

    async def list_sessions(self, user_id: str) -> list[SessionRecord]: ...

    async def insert_session_iteration(self, iteration: SessionIterationRecord) -> SessionIterationRecord: ...

    async def update_session_iteration(self, iteration_id: str, changes: dict[str, Any]) -> SessionIterationRecord: ...

    async def list_session_iterations(self, session_id: str) -> list[SessionIterationRecord]: ...

    async def insert_observation(self, observation: ObservationRecord) -> ObservationRecord: ...

    async def list_observations(self, session_id: str) -> list[ObservationRecord]: ...


def to_column_values(changes: dict[str, Any]) -> dict[str, Any]:
    """Dump pydantic values (and lists of them) into JSON-compatible column values."""
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, BaseModel):
            values[key] = value.model_dump(mode="json")
        elif isinstance(value, list) and value and isinstance(value[0], BaseModel):
            values[key] = [item.model_dump(mode="json") for item in value]
        elif isinstance(value, Enum):
            values[key] = value.value
        else:
            values[key] = value
    return values
