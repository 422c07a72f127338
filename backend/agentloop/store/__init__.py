"""Persistence collaborators for jobs and autonomous sessions."""

from agentloop.store.base import JobStore, SessionStore
from agentloop.store.memory import InMemoryStore
from agentloop.store.sql import SqlStore

__all__ = ["InMemoryStore", "JobStore", "SessionStore", "SqlStore"]
