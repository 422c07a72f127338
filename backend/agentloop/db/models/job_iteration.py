"""JobIteration model: one model turn within a job."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from agentloop.db.base import Base


class JobIteration(Base):
    """Append-only turn record.

    ``(job_id, iteration_number)`` keeps numbering contiguous and
    ``(job_id, step_index)`` makes a re-delivered step message a no-op.
    """

    __tablename__ = "job_iterations"
    __table_args__ = (
        UniqueConstraint("job_id", "iteration_number", name="uq_job_iterations_number"),
        UniqueConstraint("job_id", "step_index", name="uq_job_iterations_step"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=False, index=True)
    iteration_number = Column(Integer, nullable=False)
    step_index = Column(Integer, nullable=False)

    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)

    message_snapshot = Column(JSON, nullable=False, default=list)
    tool_calls = Column(JSON, nullable=False, default=list)
    summary_id = Column(String(36), nullable=True)

    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
