"""Observation model: typed log entry for an autonomous session."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text

from agentloop.db.base import Base


class Observation(Base):
    __tablename__ = "autonomous_observations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(36), ForeignKey("autonomous_sessions.id"), nullable=False, index=True)
    iteration_id = Column(String(36), nullable=True)

    type = Column(String(30), nullable=False)  # ObservationType enum values
    content = Column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False)
