"""AutonomousSession model: a goal driven by the evaluate/plan/execute/observe loop."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String, Text

from agentloop.db.base import Base


class AutonomousSession(Base):
    __tablename__ = "autonomous_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    goal = Column(Text, nullable=False)

    status = Column(String(20), nullable=False, default="planning")  # SessionStatus enum values
    max_iterations = Column(Integer, nullable=False, default=10)
    current_iteration = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Float, nullable=False, default=0.0)

    model = Column(String(100), nullable=False)
    tool_choice = Column(String(20), nullable=False, default="auto")
    allowed_tools = Column(JSON, nullable=True)

    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
