"""Job model: one long-running agentic request and its execution state."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from agentloop.db.base import Base


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    thread_id = Column(String(255), nullable=False, index=True)
    goal = Column(Text, nullable=False)

    status = Column(String(20), nullable=False, default="pending")  # JobStatus enum values
    cancelled = Column(Boolean, nullable=False, default=False)
    awaiting_retry = Column(Boolean, nullable=False, default=False)  # failed by the worker, retry queued

    # Model configuration
    model = Column(String(100), nullable=False)
    tool_choice = Column(String(20), nullable=False, default="auto")  # auto | none | required
    allowed_tools = Column(JSON, nullable=True)  # None = every registered tool

    # Progress
    current_iteration = Column(Integer, nullable=False, default=0)
    max_iterations = Column(Integer, nullable=False, default=100)
    step_index = Column(Integer, nullable=False, default=0)  # next step to execute
    retry_count = Column(Integer, nullable=False, default=0)
    plan = Column(JSON, nullable=True)  # {"steps": [...], "total_steps": n}

    # Accumulated state
    messages = Column(JSON, nullable=False, default=list)
    checkpoints = Column(JSON, nullable=False, default=list)
    tool_call_history = Column(JSON, nullable=False, default=list)
    total_input_tokens = Column(Integer, nullable=False, default=0)
    total_output_tokens = Column(Integer, nullable=False, default=0)

    error = Column(Text, nullable=True)

    # Optimistic concurrency token, bumped on every write
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
