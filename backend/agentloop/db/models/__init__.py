"""Re-export all models so Base.metadata sees them."""

from agentloop.db.models.autonomous_iteration import AutonomousIteration
from agentloop.db.models.autonomous_session import AutonomousSession
from agentloop.db.models.context_summary import ContextSummary
from agentloop.db.models.job import Job
from agentloop.db.models.job_iteration import JobIteration
from agentloop.db.models.observation import Observation

__all__ = [
    "AutonomousIteration",
    "AutonomousSession",
    "ContextSummary",
    "Job",
    "JobIteration",
    "Observation",
]
