"""Event publisher/subscriber for live job progress over Redis Pub/Sub.

Publishing is best-effort telemetry: a failed publish is logged and never
fails the job that produced it. Ordering is publish order within one job's
channel; there is no cross-job ordering.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class StreamEventType:
    """Event type constants carried in the ``type`` field of every stream record."""

    MESSAGE_START = "message-start"
    TEXT_DELTA = "text-delta"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    MESSAGE_COMPLETE = "message-complete"
    STATUS_UPDATE = "status-update"
    JOB_COMPLETE = "job-complete"


def stream_channel(job_id: str) -> str:
    return f"agentloop:stream:{job_id}"


EventHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class Subscription:
    """A live subscription to one job's channel; call ``unsubscribe()`` to tear it down."""

    def __init__(
        self,
        redis: Redis,
        job_id: str,
        handler: EventHandler,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.job_id = job_id
        self.channel = stream_channel(job_id)
        self._pubsub = redis.pubsub()
        self._handler = handler
        self._on_close = on_close
        self._task: asyncio.Task | None = None
        self._closed = False
        self._lost = False

    async def start(self) -> None:
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen(), name=f"subscription:{self.job_id}")

    @property
    def active(self) -> bool:
        return not (self._closed or self._lost)

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except Exception as exc:
                # The connection is gone; nothing more will arrive on this subscription
                logger.error(
                    "stream_subscription_lost",
                    job_id=self.job_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                self._lost = True
                if self._on_close is not None:
                    self._on_close()
                return
            if message is None or message.get("type") != "message":
                continue
            try:
                event = json.loads(message["data"])
            except (json.JSONDecodeError, TypeError):
                logger.warning("stream_event_undecodable", job_id=self.job_id)
                continue
            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "stream_handler_failed",
                    job_id=self.job_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except Exception as exc:
            logger.warning(
                "stream_unsubscribe_failed",
                job_id=self.job_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )


class EventPublisher:
    """Publishes typed progress events to ``agentloop:stream:{job_id}``."""

    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    async def publish(self, job_id: str, event: dict[str, Any]) -> None:
        """Publish ``event`` to the job's channel. Never raises.

        ``job_id`` and ``timestamp`` are filled in when missing.
        """
        payload = {"job_id": job_id, **event}
        payload.setdefault("timestamp", datetime.now(UTC).isoformat())
        try:
            await self.redis.publish(stream_channel(job_id), json.dumps(payload, default=str))
        except Exception as exc:
            logger.warning(
                "stream_publish_failed",
                job_id=job_id,
                event_type=event.get("type"),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def subscribe(
        self, job_id: str, handler: EventHandler, on_close: Callable[[], None] | None = None
    ) -> Subscription:
        """Open a dedicated subscription that calls ``handler`` once per event.

        ``on_close`` runs if the subscription dies on its own (a lost connection).
        """
        subscription = Subscription(self.redis, job_id, handler, on_close)
        await subscription.start()
        return subscription
