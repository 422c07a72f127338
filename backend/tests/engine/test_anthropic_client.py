"""Tests for the Anthropic client: message conversion, the streamed tool loop and completions."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentloop.engine.llm import (
    AnthropicLLMClient,
    Finish,
    TextDelta,
    ToolCall,
    ToolResult,
    TurnRequest,
    to_anthropic_messages,
)
from agentloop.engine.tools import BuiltinTool, ToolExecutor
from agentloop.schemas.messages import ChatMessage, TextPart, ToolPart

pytestmark = pytest.mark.unit


# ============================================================================
# Message conversion
# ============================================================================


def test_system_messages_fold_into_system_prompt():
    system, turns = to_anthropic_messages(
        "Base prompt.",
        [ChatMessage.from_text("system", "Summary of earlier work."), ChatMessage.from_text("user", "Go")],
    )

    assert system == "Base prompt.\n\nSummary of earlier work."
    assert turns == [{"role": "user", "content": [{"type": "text", "text": "Go"}]}]


def test_tool_parts_become_tool_use_and_tool_result():
    assistant = ChatMessage(
        role="assistant",
        parts=[
            TextPart(text="Looking."),
            ToolPart(tool_call_id="t1", tool_name="lookup", input={"q": 1}, state="output-available", output={"n": 2}),
        ],
    )

    _system, turns = to_anthropic_messages("", [ChatMessage.from_text("user", "Find it"), assistant])

    assert [t["role"] for t in turns] == ["user", "assistant", "user"]
    assert turns[1]["content"][1] == {"type": "tool_use", "id": "t1", "name": "lookup", "input": {"q": 1}}
    assert turns[2]["content"] == [
        {"type": "tool_result", "tool_use_id": "t1", "content": '{"n": 2}', "is_error": False}
    ]


def test_conversation_starts_and_ends_on_user():
    _system, turns = to_anthropic_messages("", [ChatMessage.from_text("assistant", "Hi")])

    assert turns[0] == {"role": "user", "content": [{"type": "text", "text": "Begin."}]}
    assert turns[-1] == {"role": "user", "content": [{"type": "text", "text": "Continue."}]}


def test_consecutive_user_messages_merge():
    _system, turns = to_anthropic_messages(
        "", [ChatMessage.from_text("user", "one"), ChatMessage.from_text("user", "two")]
    )

    assert len(turns) == 1
    assert [b["text"] for b in turns[0]["content"]] == ["one", "two"]


# ============================================================================
# Streamed tool loop
# ============================================================================


class FakeStream:
    def __init__(self, response, chunks):
        self._response = response
        self._chunks = chunks

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    async def text_stream(self):
        for chunk in self._chunks:
            yield chunk

    async def get_final_message(self):
        return self._response


class FakeMessages:
    def __init__(self, scripted):
        self._scripted = list(scripted)
        self.calls = []

    def stream(self, **kwargs):
        self.calls.append({**kwargs, "messages": list(kwargs["messages"])})
        response, chunks = self._scripted.pop(0)
        return FakeStream(response, chunks)


def _response(content, stop_reason="end_turn", input_tokens=10, output_tokens=5):
    return SimpleNamespace(
        content=content,
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def _tool_use(call_id, name, tool_input):
    return SimpleNamespace(type="tool_use", id=call_id, name=name, input=tool_input)


def _client(scripted) -> tuple[AnthropicLLMClient, FakeMessages]:
    client = AnthropicLLMClient(model="claude-sonnet-4-20250514", api_key="test-key")
    messages = FakeMessages(scripted)
    client._client = SimpleNamespace(messages=messages)
    return client, messages


def _request(executor, max_steps=100, tool_choice="auto") -> TurnRequest:
    return TurnRequest(
        system_prompt="Be precise.",
        messages=[ChatMessage.from_text("user", "Count rows")],
        model="claude-sonnet-4-20250514",
        executor=executor,
        tool_choice=tool_choice,
        max_steps=max_steps,
    )


async def _collect(client, request):
    return [event async for event in client.stream_turn(request)]


async def count_rows(arguments):
    return {"rows": 42}


async def test_tool_loop_runs_tools_and_sums_usage(fake_sleep):
    client, messages = _client(
        [
            (_response([_tool_use("toolu_1", "count_rows", {"table": "t"})], stop_reason="tool_use"), ["Checking. "]),
            (_response([SimpleNamespace(type="text", text="42 rows.")]), ["42 rows."]),
        ]
    )
    executor = ToolExecutor([BuiltinTool("count_rows", "Count", count_rows)], sleep=fake_sleep)

    events = await _collect(client, _request(executor, tool_choice="required"))

    assert events[0] == TextDelta(text="Checking. ")
    assert events[1] == ToolCall(tool_call_id="toolu_1", tool_name="count_rows", input={"table": "t"})
    assert events[2] == ToolResult(tool_call_id="toolu_1", tool_name="count_rows", output={"rows": 42})
    assert events[3] == TextDelta(text="42 rows.")
    finish = events[-1]
    assert isinstance(finish, Finish)
    assert finish.stop_reason == "end_turn"
    assert finish.usage.total_tokens == 30

    assert messages.calls[0]["tool_choice"] == {"type": "any"}
    assert messages.calls[0]["tools"][0]["name"] == "count_rows"
    second_history = messages.calls[1]["messages"]
    assert second_history[-1]["content"][0]["tool_use_id"] == "toolu_1"


async def test_step_budget_ends_the_turn(fake_sleep):
    client, _messages = _client(
        [(_response([_tool_use("toolu_1", "count_rows", {})], stop_reason="tool_use"), [])]
    )
    executor = ToolExecutor([BuiltinTool("count_rows", "Count", count_rows)], sleep=fake_sleep)

    events = await _collect(client, _request(executor, max_steps=1))

    assert events[-1].stop_reason == "step_budget_exhausted"


async def test_repeated_identical_calls_stop_on_second_strike(fake_sleep):
    repeated = (_response([_tool_use("t", "count_rows", {"table": "same"})], stop_reason="tool_use"), [])
    client, _messages = _client([repeated] * 6)
    executor = ToolExecutor([BuiltinTool("count_rows", "Count", count_rows)], sleep=fake_sleep)

    events = await _collect(client, _request(executor))

    assert events[-1].stop_reason == "repetition_detected"
    steering = [e for e in events if isinstance(e, ToolResult) and e.is_error]
    assert len(steering) == 2
    assert "different approach" in steering[0].output


async def test_tool_choice_none_sends_no_tools(fake_sleep):
    client, messages = _client([(_response([SimpleNamespace(type="text", text="ok")]), ["ok"])])
    executor = ToolExecutor([BuiltinTool("count_rows", "Count", count_rows)], sleep=fake_sleep)

    await _collect(client, _request(executor, tool_choice="none"))

    assert "tools" not in messages.calls[0]


# ============================================================================
# One-shot completions
# ============================================================================


async def test_complete_joins_text_blocks_and_reads_usage():
    client = AnthropicLLMClient(model="claude-sonnet-4-20250514", api_key="test-key")
    create = AsyncMock(
        return_value=_response([SimpleNamespace(type="text", text="YES")], input_tokens=12, output_tokens=1)
    )
    client._client = MagicMock()
    client._client.messages.create = create

    completion = await client.complete("system", "Does this need a plan?", max_tokens=10)

    assert completion.text == "YES"
    assert completion.usage.total_tokens == 13
    assert create.await_args.kwargs["max_tokens"] == 10
    assert create.await_args.kwargs["model"] == "claude-sonnet-4-20250514"
