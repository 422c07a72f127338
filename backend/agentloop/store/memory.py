"""InMemoryStore: process-local implementation of JobStore and SessionStore.

Records are deep-copied on the way in and out so callers never share mutable
state with the store, matching the isolation the SQL store gives for free.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

from agentloop.core.exceptions import (
    DuplicateRecordError,
    JobNotFoundError,
    SessionNotFoundError,
    StaleRecordError,
)
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


def _merge(record, changes: dict[str, Any]):
    data = record.model_dump()
    data.update(changes)
    return type(record).model_validate(data).model_copy(deep=True)


class InMemoryStore:
    """Satisfies both ``JobStore`` and ``SessionStore``."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._iterations: dict[str, IterationRecord] = {}
        self._summaries: dict[str, ContextSummaryRecord] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._session_iterations: dict[str, SessionIterationRecord] = {}
        self._observations: list[ObservationRecord] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: JobRecord) -> JobRecord:
        self._jobs[job.id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> JobRecord | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update_job(
        self,
        job_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> JobRecord:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            if expected_version is not None and current.version != expected_version:
                raise StaleRecordError(job_id, expected_version, current.version)
            updated = _merge(
                current,
                {**changes, "version": current.version + 1, "updated_at": datetime.now(UTC)},
            )
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def insert_iteration(self, iteration: IterationRecord) -> IterationRecord:
        async with self._lock:
            for existing in self._iterations.values():
                if existing.job_id != iteration.job_id:
                    continue
                if existing.iteration_number == iteration.iteration_number or existing.step_index == iteration.step_index:
                    raise DuplicateRecordError(
                        f"Iteration {iteration.iteration_number} / step {iteration.step_index} already exists for job {iteration.job_id}"
                    )
            self._iterations[iteration.id] = iteration.model_copy(deep=True)
            return iteration.model_copy(deep=True)

    async def update_iteration(self, iteration_id: str, changes: dict[str, Any]) -> IterationRecord:
        current = self._iterations[iteration_id]
        updated = _merge(current, changes)
        self._iterations[iteration_id] = updated
        return updated.model_copy(deep=True)

    async def get_iteration_for_step(self, job_id: str, step_index: int) -> IterationRecord | None:
        for iteration in self._iterations.values():
            if iteration.job_id == job_id and iteration.step_index == step_index:
                return iteration.model_copy(deep=True)
        return None

    async def list_iterations(self, job_id: str) -> list[IterationRecord]:
        rows = [i for i in self._iterations.values() if i.job_id == job_id]
        return [i.model_copy(deep=True) for i in sorted(rows, key=lambda i: i.iteration_number)]

    async def insert_context_summary(self, summary: ContextSummaryRecord) -> ContextSummaryRecord:
        self._summaries[summary.id] = summary.model_copy(deep=True)
        return summary.model_copy(deep=True)

    async def list_context_summaries(self, job_id: str) -> list[ContextSummaryRecord]:
        return [s.model_copy(deep=True) for s in self._summaries.values() if s.job_id == job_id]

    async def save_checkpoint(self, job_id: str, checkpoint: Checkpoint) -> None:
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        await self.update_job(job_id, {"checkpoints": [*job.checkpoints, checkpoint]})

    async def get_latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        job = self._jobs.get(job_id)
        if job is None or not job.checkpoints:
            return None
        return job.checkpoints[-1].model_copy(deep=True)

    async def append_tool_calls(self, job_id: str, records: list[ToolCallRecord]) -> None:
        if not records:
            return
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        await self.update_job(job_id, {"tool_call_history": [*job.tool_call_history, *records]})

    # ------------------------------------------------------------------
    # Autonomous sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        self._sessions[session.id] = session.model_copy(deep=True)
        return session.model_copy(deep=True)

    async def get_session(self, session_id: str, user_id: str | None = None) -> SessionRecord | None:
        session = self._sessions.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            return None
        return session.model_copy(deep=True)

    async def update_session(self, session_id: str, changes: dict[str, Any]) -> SessionRecord:
        current = self._sessions.get(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)
        now = datetime.now(UTC)
        updated = _merge(current, {**changes, "updated_at": now, "last_activity_at": now})
        self._sessions[session_id] = updated
        return updated.model_copy(deep=True)

    async def list_sessions(self, user_id: str) -> list[SessionRecord]:
        rows = [s for s in self._sessions.values() if s.user_id == user_id]
        return [s.model_copy(deep=True) for s in sorted(rows, key=lambda s: s.created_at, reverse=True)]

    async def insert_session_iteration(self, iteration: SessionIterationRecord) -> SessionIterationRecord:
        self._session_iterations[iteration.id] = iteration.model_copy(deep=True)
        return iteration.model_copy(deep=True)

    async def update_session_iteration(self, iteration_id: str, changes: dict[str, Any]) -> SessionIterationRecord:
        current = self._session_iterations[iteration_id]
        updated = _merge(current, changes)
        self._session_iterations[iteration_id] = updated
        return updated.model_copy(deep=True)

    async def list_session_iterations(self, session_id: str) -> list[SessionIterationRecord]:
        rows = [i for i in self._session_iterations.values() if i.session_id == session_id]
        return [i.model_copy(deep=True) for i in sorted(rows, key=lambda i: i.iteration_number)]

    async def insert_observation(self, observation: ObservationRecord) -> ObservationRecord:
        self._observations.append(observation.model_copy(deep=True))
        return observation.model_copy(deep=True)

    async def list_observations(self, session_id: str) -> list[ObservationRecord]:
        return [o.model_copy(deep=True) for o in self._observations if o.session_id == session_id]
