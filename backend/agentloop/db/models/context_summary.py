"""ContextSummary model: a synopsis that replaced older messages for one turn."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from agentloop.db.base import Base


class ContextSummary(Base):
    __tablename__ = "context_summaries"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=False, index=True)
    iteration_id = Column(String(36), nullable=True)

    summary_text = Column(Text, nullable=False)
    messages_summarized = Column(Integer, nullable=False)
    token_count_before = Column(Integer, nullable=False)
    token_count_after = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
