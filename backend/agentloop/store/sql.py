"""SqlStore: PostgreSQL implementation of JobStore and SessionStore.

Each call opens its own short-lived ``AsyncSession`` from the shared factory,
so the store is safe to share between worker tasks. Job updates with an
``expected_version`` are a single conditional ``UPDATE ... WHERE version = n``;
zero affected rows means another writer got there first.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentloop.core.exceptions import (
    DuplicateRecordError,
    JobNotFoundError,
    SessionNotFoundError,
    StaleRecordError,
)
from agentloop.db.models import (
    AutonomousIteration,
    AutonomousSession,
    ContextSummary,
    Job,
    JobIteration,
    Observation,
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
from agentloop.store.base import to_column_values

logger = structlog.get_logger(__name__)


def _row_values(record) -> dict[str, Any]:
    # Top-level datetimes stay native for DateTime columns; nested models become JSON
    return to_column_values(dict(record))


class SqlStore:
    """Satisfies both ``JobStore`` and ``SessionStore``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, job: JobRecord) -> JobRecord:
        async with self._session_factory() as db:
            row = Job(**_row_values(job))
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return JobRecord.model_validate(row)

    async def get_job(self, job_id: str) -> JobRecord | None:
        async with self._session_factory() as db:
            row = await db.get(Job, job_id)
            return JobRecord.model_validate(row) if row is not None else None

    async def update_job(
        self,
        job_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> JobRecord:
        values = to_column_values(changes)
        values["version"] = Job.version + 1
        values["updated_at"] = datetime.now(UTC)

        async with self._session_factory() as db:
            stmt = update(Job).where(Job.id == job_id)
            if expected_version is not None:
                stmt = stmt.where(Job.version == expected_version)
            result = await db.execute(stmt.values(**values).execution_options(synchronize_session=False))
            await db.commit()

            if result.rowcount == 0:
                current = await db.get(Job, job_id)
                if current is None:
                    raise JobNotFoundError(job_id)
                raise StaleRecordError(job_id, expected_version or 0, current.version)

            row = await db.get(Job, job_id, populate_existing=True)
            return JobRecord.model_validate(row)

    async def insert_iteration(self, iteration: IterationRecord) -> IterationRecord:
        async with self._session_factory() as db:
            row = JobIteration(**_row_values(iteration))
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise DuplicateRecordError(
                    f"Iteration {iteration.iteration_number} / step {iteration.step_index} already exists for job {iteration.job_id}"
                ) from exc
            await db.refresh(row)
            return IterationRecord.model_validate(row)

    async def update_iteration(self, iteration_id: str, changes: dict[str, Any]) -> IterationRecord:
        async with self._session_factory() as db:
            await db.execute(
                update(JobIteration).where(JobIteration.id == iteration_id).values(**to_column_values(changes))
            )
            await db.commit()
            row = await db.get(JobIteration, iteration_id, populate_existing=True)
            return IterationRecord.model_validate(row)

    async def get_iteration_for_step(self, job_id: str, step_index: int) -> IterationRecord | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(JobIteration).where(JobIteration.job_id == job_id, JobIteration.step_index == step_index)
            )
            row = result.scalar_one_or_none()
            return IterationRecord.model_validate(row) if row is not None else None

    async def list_iterations(self, job_id: str) -> list[IterationRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(JobIteration).where(JobIteration.job_id == job_id).order_by(JobIteration.iteration_number)
            )
            return [IterationRecord.model_validate(row) for row in result.scalars().all()]

    async def insert_context_summary(self, summary: ContextSummaryRecord) -> ContextSummaryRecord:
        async with self._session_factory() as db:
            row = ContextSummary(**_row_values(summary))
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return ContextSummaryRecord.model_validate(row)

    async def save_checkpoint(self, job_id: str, checkpoint: Checkpoint) -> None:
        async with self._session_factory() as db:
            row = await db.get(Job, job_id, with_for_update=True)
            if row is None:
                raise JobNotFoundError(job_id)
            row.checkpoints = [*(row.checkpoints or []), checkpoint.model_dump(mode="json")]
            row.version = row.version + 1
            await db.commit()

    async def get_latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        async with self._session_factory() as db:
            row = await db.get(Job, job_id)
            if row is None or not row.checkpoints:
                return None
            return Checkpoint.model_validate(row.checkpoints[-1])

    async def append_tool_calls(self, job_id: str, records: list[ToolCallRecord]) -> None:
        if not records:
            return
        async with self._session_factory() as db:
            row = await db.get(Job, job_id, with_for_update=True)
            if row is None:
                raise JobNotFoundError(job_id)
            row.tool_call_history = [
                *(row.tool_call_history or []),
                *(r.model_dump(mode="json") for r in records),
            ]
            row.version = row.version + 1
            await db.commit()

    # ------------------------------------------------------------------
    # Autonomous sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: SessionRecord) -> SessionRecord:
        async with self._session_factory() as db:
            row = AutonomousSession(**_row_values(session))
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return SessionRecord.model_validate(row)

    async def get_session(self, session_id: str, user_id: str | None = None) -> SessionRecord | None:
        async with self._session_factory() as db:
            row = await db.get(AutonomousSession, session_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                return None
            return SessionRecord.model_validate(row)

    async def update_session(self, session_id: str, changes: dict[str, Any]) -> SessionRecord:
        now = datetime.now(UTC)
        values = to_column_values(changes) | {"updated_at": now, "last_activity_at": now}
        async with self._session_factory() as db:
            result = await db.execute(
                update(AutonomousSession).where(AutonomousSession.id == session_id).values(**values)
            )
            await db.commit()
            if result.rowcount == 0:
                raise SessionNotFoundError(session_id)
            row = await db.get(AutonomousSession, session_id, populate_existing=True)
            return SessionRecord.model_validate(row)

    async def list_sessions(self, user_id: str) -> list[SessionRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AutonomousSession)
                .where(AutonomousSession.user_id == user_id)
                .order_by(AutonomousSession.created_at.desc())
            )
            return [SessionRecord.model_validate(row) for row in result.scalars().all()]

    async def insert_session_iteration(self, iteration: SessionIterationRecord) -> SessionIterationRecord:
        async with self._session_factory() as db:
            row = AutonomousIteration(**_row_values(iteration))
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return SessionIterationRecord.model_validate(row)

    async def update_session_iteration(self, iteration_id: str, changes: dict[str, Any]) -> SessionIterationRecord:
        async with self._session_factory() as db:
            await db.execute(
                update(AutonomousIteration)
                .where(AutonomousIteration.id == iteration_id)
                .values(**to_column_values(changes))
            )
            await db.commit()
            row = await db.get(AutonomousIteration, iteration_id, populate_existing=True)
            return SessionIterationRecord.model_validate(row)

    async def list_session_iterations(self, session_id: str) -> list[SessionIterationRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AutonomousIteration)
                .where(AutonomousIteration.session_id == session_id)
                .order_by(AutonomousIteration.iteration_number)
            )
            return [SessionIterationRecord.model_validate(row) for row in result.scalars().all()]

    async def insert_observation(self, observation: ObservationRecord) -> ObservationRecord:
        values = _row_values(observation)
        values["metadata_"] = values.pop("metadata", {})
        async with self._session_factory() as db:
            row = Observation(**values)
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return ObservationRecord.model_validate(row)

    async def list_observations(self, session_id: str) -> list[ObservationRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Observation).where(Observation.session_id == session_id).order_by(Observation.created_at)
            )
            return [ObservationRecord.model_validate(row) for row in result.scalars().all()]
