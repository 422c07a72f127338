"""Tests for TurnRunner: event publishing, message folding, usage and timeout."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from agentloop.core.exceptions import ModelTimeoutError
from agentloop.engine.fake_llm import ScriptedLLMClient, ScriptedToolCall, ScriptedTurn
from agentloop.engine.llm import ToolResult, TurnRequest
from agentloop.engine.messages import MessageAccumulator
from agentloop.engine.tools import BuiltinTool, ToolExecutor
from agentloop.engine.turn import TurnRunner
from agentloop.events.publisher import StreamEventType
from agentloop.schemas.messages import ChatMessage

pytestmark = pytest.mark.unit


async def lookup(arguments):
    return {"rows": 3}


def _request(executor=None) -> TurnRequest:
    return TurnRequest(
        system_prompt="You are a careful analyst.",
        messages=[ChatMessage.from_text("user", "Count the rows")],
        model="claude-sonnet-4-20250514",
        executor=executor,
    )


def _published(publisher: AsyncMock) -> list[dict]:
    return [c.args[1] for c in publisher.publish.await_args_list]


async def test_run_publishes_events_and_builds_message(fake_sleep):
    publisher = AsyncMock()
    llm = ScriptedLLMClient(
        turns=[ScriptedTurn(text="Counting now.", tool_calls=[ScriptedToolCall("lookup", {"table": "t"}, "toolu_a")])]
    )
    executor = ToolExecutor([BuiltinTool("lookup", "Lookup", lookup)], sleep=fake_sleep)

    result = await TurnRunner(llm, publisher).run(_request(executor), stream_id="job-1", iteration=4)

    events = _published(publisher)
    types = [e["type"] for e in events]
    assert types[0] == StreamEventType.MESSAGE_START
    assert types[-1] == StreamEventType.MESSAGE_COMPLETE
    assert StreamEventType.TOOL_CALL in types
    assert StreamEventType.TOOL_RESULT in types
    assert {e["message_id"] for e in events} == {result.message.id}
    assert {e["iteration"] for e in events} == {4}
    assert all(c.args[0] == "job-1" for c in publisher.publish.await_args_list)

    tool_result = next(e for e in events if e["type"] == StreamEventType.TOOL_RESULT)
    assert tool_result["output"] == {"rows": 3}
    assert tool_result["is_error"] is False

    assert result.text == "Counting now."
    [part] = result.message.tool_parts
    assert part.state == "output-available"
    assert part.output == {"rows": 3}
    assert result.usage_reported is True
    assert result.usage.total_tokens == 150
    assert [r.tool_call_id for r in result.tool_calls] == ["toolu_a"]


async def test_run_without_stream_id_publishes_nothing():
    publisher = AsyncMock()

    await TurnRunner(ScriptedLLMClient(), publisher).run(_request())

    publisher.publish.assert_not_awaited()


async def test_missing_usage_is_estimated():
    result = await TurnRunner(ScriptedLLMClient(turns=[ScriptedTurn(text="abcd", usage=None)])).run(_request())

    assert result.usage_reported is False
    assert result.usage.input_tokens > 0
    assert result.usage.total_tokens == result.usage.input_tokens + result.usage.output_tokens


async def test_timeout_raises_model_timeout_error():
    class HangingLLM(ScriptedLLMClient):
        async def stream_turn(self, request):
            await asyncio.sleep(5)
            yield ToolResult(tool_call_id="never", tool_name="never", output=None)

    with pytest.raises(ModelTimeoutError) as exc_info:
        await TurnRunner(HangingLLM(), timeout_seconds=0.05).run(_request())

    assert exc_info.value.timeout_seconds == 0.05


async def test_model_errors_propagate_unchanged():
    llm = ScriptedLLMClient(turns=[ScriptedTurn(error=ConnectionError("reset by peer"))])

    with pytest.raises(ConnectionError):
        await TurnRunner(llm).run(_request())


class TestMessageAccumulator:
    def test_text_then_tools(self):
        acc = MessageAccumulator("msg-1")
        acc.add_text("Hel")
        acc.add_text("lo")
        acc.add_tool_call("t1", "lookup", {"q": 1})
        acc.add_tool_result("t1", "lookup", "found", is_error=False)

        message = acc.build()

        assert message.id == "msg-1"
        assert message.role == "assistant"
        assert message.parts[0].type == "text"
        assert message.text == "Hello"
        [part] = message.tool_parts
        assert (part.state, part.output, part.input) == ("output-available", "found", {"q": 1})

    def test_call_without_result_stays_input_available(self):
        acc = MessageAccumulator("msg-2")
        acc.add_tool_call("t1", "lookup", {})

        [part] = acc.build().tool_parts

        assert part.state == "input-available"

    def test_result_without_call_is_kept(self):
        acc = MessageAccumulator("msg-3")
        acc.add_tool_result("t9", "lookup", "late", is_error=True)

        [part] = acc.build().tool_parts

        assert part.input == {}
        assert part.state == "output-available"
        assert part.is_error is True
