"""Tests for the Redis event publisher and the SSE queue sink."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from agentloop.events.publisher import EventPublisher, StreamEventType, Subscription, stream_channel
from agentloop.events.sink import HEARTBEAT_FRAME, EventSink, QueueEventSink, format_sse

pytestmark = pytest.mark.unit


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def _collect(sink: QueueEventSink) -> list[bytes]:
    return [chunk async for chunk in sink.chunks(heartbeat_seconds=5)]


class TestEventPublisher:
    async def test_subscriber_receives_events_in_order(self, redis):
        publisher = EventPublisher(redis)
        received: list[dict] = []
        subscription = await publisher.subscribe("job-1", received.append)
        try:
            for i in range(3):
                await publisher.publish("job-1", {"type": StreamEventType.TEXT_DELTA, "delta": str(i)})
            await _wait_for(lambda: len(received) == 3)
        finally:
            await subscription.unsubscribe()

        assert [e["delta"] for e in received] == ["0", "1", "2"]
        assert all(e["job_id"] == "job-1" for e in received)
        assert all("timestamp" in e for e in received)

    async def test_subscription_only_sees_its_job(self, redis):
        publisher = EventPublisher(redis)
        received: list[dict] = []
        subscription = await publisher.subscribe("job-1", received.append)
        try:
            await publisher.publish("job-2", {"type": StreamEventType.STATUS_UPDATE})
            await publisher.publish("job-1", {"type": StreamEventType.JOB_COMPLETE})
            await _wait_for(lambda: len(received) == 1)
        finally:
            await subscription.unsubscribe()

        assert received[0]["type"] == StreamEventType.JOB_COMPLETE

    async def test_async_handler_and_failing_handler(self, redis):
        publisher = EventPublisher(redis)
        seen: list[str] = []

        async def handler(event):
            if event["type"] == "bad":
                raise ValueError("handler broke")
            seen.append(event["type"])

        subscription = await publisher.subscribe("job-1", handler)
        try:
            await publisher.publish("job-1", {"type": "bad"})
            await publisher.publish("job-1", {"type": StreamEventType.MESSAGE_START})
            await _wait_for(lambda: seen == [StreamEventType.MESSAGE_START])
        finally:
            await subscription.unsubscribe()

        assert not subscription.active

    async def test_publish_never_raises(self):
        broken = AsyncMock()
        broken.publish.side_effect = ConnectionError("redis down")

        await EventPublisher(broken).publish("job-1", {"type": StreamEventType.STATUS_UPDATE})

        channel, payload = broken.publish.await_args.args
        assert channel == stream_channel("job-1") == "agentloop:stream:job-1"
        assert json.loads(payload)["type"] == StreamEventType.STATUS_UPDATE

    async def test_lost_connection_ends_the_stream(self, redis):
        sink = QueueEventSink()
        subscription = Subscription(redis, "job-1", lambda event: sink.write(format_sse(event)), on_close=sink.end)
        subscription._pubsub.get_message = AsyncMock(side_effect=RedisConnectionError("connection lost"))

        await subscription.start()
        try:
            chunks = await asyncio.wait_for(_collect(sink), timeout=3.0)
        finally:
            await subscription.unsubscribe()

        assert chunks == []
        assert sink.ended
        assert not subscription.active


class TestQueueEventSink:
    async def test_chunks_until_end(self):
        sink = QueueEventSink()
        sink.write(b"a")
        sink.write(b"b")
        sink.end()
        sink.write(b"ignored")

        assert isinstance(sink, EventSink)
        assert [c async for c in sink.chunks()] == [b"a", b"b"]
        assert sink.ended

    async def test_heartbeat_while_idle(self):
        sink = QueueEventSink()
        chunks = sink.chunks(heartbeat_seconds=0.01)

        assert await chunks.__anext__() == HEARTBEAT_FRAME

        sink.write(b"data")
        assert await chunks.__anext__() == b"data"
        sink.end()
        with pytest.raises(StopAsyncIteration):
            await chunks.__anext__()

    def test_format_sse(self):
        frame = format_sse({"type": "text-delta", "delta": "hi"})
        assert frame == b'data: {"type": "text-delta", "delta": "hi"}\n\n'
