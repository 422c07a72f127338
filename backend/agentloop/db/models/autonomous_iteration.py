"""AutonomousIteration model: phase-by-phase record of one loop iteration."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String

from agentloop.db.base import Base


class AutonomousIteration(Base):
    __tablename__ = "autonomous_iterations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(36), ForeignKey("autonomous_sessions.id"), nullable=False, index=True)
    iteration_number = Column(Integer, nullable=False)

    phase = Column(String(20), nullable=False, default="evaluating")  # IterationPhase enum values
    evaluation = Column(JSON, nullable=True)
    plan = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)

    duration_ms = Column(Integer, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
