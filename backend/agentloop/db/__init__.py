"""Database package: SQLAlchemy engine and models, plus the shared Redis client."""

from agentloop.db.base import Base, close_db, init_db, ping_db
from agentloop.db.redis import close_redis, init_redis, ping_redis

__all__ = [
    "Base",
    "close_db",
    "close_redis",
    "init_db",
    "init_redis",
    "ping_db",
    "ping_redis",
]
