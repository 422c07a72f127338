"""Byte sinks that bridge event subscriptions into streaming HTTP responses.

``EventSink`` is the whole contract a producer needs: ``write(bytes)`` and
``end()``. ``QueueEventSink`` implements it on an ``asyncio.Queue`` and is
consumed as an async iterator by FastAPI's ``StreamingResponse``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

HEARTBEAT_FRAME = b"event: heartbeat\ndata: {}\n\n"

_END = object()


@runtime_checkable
class EventSink(Protocol):
    def write(self, chunk: bytes) -> None: ...

    def end(self) -> None: ...


def format_sse(event: dict[str, Any]) -> bytes:
    """Encode one event as a server-sent-events ``data:`` frame."""
    return f"data: {json.dumps(event, default=str)}\n\n".encode()


class QueueEventSink:
    """In-process sink; writes after ``end()`` are ignored."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._ended = False

    @property
    def ended(self) -> bool:
        return self._ended

    def write(self, chunk: bytes) -> None:
        if self._ended:
            return
        self._queue.put_nowait(chunk)

    def end(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._queue.put_nowait(_END)

    async def chunks(self, heartbeat_seconds: float | None = None) -> AsyncIterator[bytes]:
        """Yield written chunks until ``end()``; emit heartbeats while idle."""
        while True:
            try:
                if heartbeat_seconds:
                    item = await asyncio.wait_for(self._queue.get(), timeout=heartbeat_seconds)
                else:
                    item = await self._queue.get()
            except TimeoutError:
                yield HEARTBEAT_FRAME
                continue
            if item is _END:
                return
            yield item
