"""Language-model client contract and the Anthropic streaming tool-use implementation.

A turn is one request from the engine's point of view: the client streams
text, runs every tool the model asks for through the request's executor,
feeds results back, and keeps going until the model stops or the turn's
step budget runs out. Callers see a flat async stream of events:

- ``TextDelta``: a chunk of assistant text
- ``ToolCall``: the model requested a tool (input is complete)
- ``ToolResult``: the executor finished that call
- ``Finish``: the turn ended; carries usage and the stop reason
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import anthropic
import structlog

from agentloop.core.config import get_settings
from agentloop.engine.llm_helpers import invoke_with_retry
from agentloop.engine.safety import RepetitionError, StepBudgetExhausted, StepGuard
from agentloop.engine.tokens import TokenCount, extract_token_count
from agentloop.engine.tools import ToolExecutor, format_tool_error, tool_definitions
from agentloop.schemas.jobs import ToolCallStatus
from agentloop.schemas.messages import ChatMessage, TextPart, ToolPart

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCall:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    tool_name: str
    output: Any
    is_error: bool = False


@dataclass(frozen=True)
class Finish:
    usage: TokenCount | None
    stop_reason: str


StreamEvent = TextDelta | ToolCall | ToolResult | Finish

# Stop reasons that mean the turn was cut short rather than finished
INCOMPLETE_STOP_REASONS = frozenset({"step_budget_exhausted", "max_tokens"})


@dataclass
class TurnRequest:
    system_prompt: str
    messages: list[ChatMessage]
    model: str
    executor: ToolExecutor | None = None
    tool_choice: str = "auto"  # auto | none | required
    max_steps: int = 100
    max_tokens: int = 4096


@dataclass(frozen=True)
class Completion:
    text: str
    usage: TokenCount = field(default_factory=TokenCount)


@runtime_checkable
class LLMClient(Protocol):
    def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]: ...

    async def complete(
        self,
        system: str,
        prompt: str,
        max_tokens: int = 1024,
        model: str | None = None,
    ) -> Completion: ...


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------

_TOOL_CHOICE = {"auto": "auto", "none": "none", "required": "any"}


def _stringify(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str)


def to_anthropic_messages(system_prompt: str, messages: list[ChatMessage]) -> tuple[str, list[dict]]:
    """Convert stored messages into Anthropic's (system, messages) shape.

    System messages (including conversation summaries) are appended to the
    system prompt. Assistant tool parts become ``tool_use`` blocks followed by
    a user turn of ``tool_result`` blocks. Consecutive same-role turns are
    merged, and the list always starts and ends on a user turn.
    """
    system_chunks = [system_prompt] if system_prompt else []
    turns: list[dict] = []

    def _append(role: str, blocks: list[dict]) -> None:
        if not blocks:
            return
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": list(blocks)})

    for message in messages:
        if message.role == "system":
            if message.text:
                system_chunks.append(message.text)
            continue

        if message.role == "user":
            _append("user", [{"type": "text", "text": p.text} for p in message.parts if isinstance(p, TextPart) and p.text])
            continue

        blocks: list[dict] = []
        results: list[dict] = []
        for part in message.parts:
            if isinstance(part, TextPart) and part.text:
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolPart):
                blocks.append({"type": "tool_use", "id": part.tool_call_id, "name": part.tool_name, "input": part.input})
                results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": part.tool_call_id,
                        "content": _stringify(part.output) if part.state == "output-available" else "No result recorded.",
                        "is_error": part.is_error,
                    }
                )
        _append("assistant", blocks)
        _append("user", results)

    if not turns or turns[0]["role"] != "user":
        turns.insert(0, {"role": "user", "content": [{"type": "text", "text": "Begin."}]})
    if turns[-1]["role"] != "user":
        turns.append({"role": "user", "content": [{"type": "text", "text": "Continue."}]})

    return "\n\n".join(system_chunks), turns


# ---------------------------------------------------------------------------
# Anthropic implementation
# ---------------------------------------------------------------------------


class AnthropicLLMClient:
    """Streaming tool-use loop on the Anthropic SDK.

    Tool calls inside a turn are executed through the request's
    ``ToolExecutor``; failures come back to the model as error tool results
    so the turn keeps going.
    """

    def __init__(self, model: str | None = None, api_key: str | None = None) -> None:
        settings = get_settings()
        self.model = model or settings.default_model
        self._client = anthropic.AsyncAnthropic(api_key=api_key or settings.anthropic_api_key)

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        bound_logger = logger.bind(model=request.model)
        system, history = to_anthropic_messages(request.system_prompt, request.messages)

        executor = request.executor if request.tool_choice != "none" else None
        tools = tool_definitions(executor.tools) if executor is not None else []

        guard = StepGuard(max_steps=request.max_steps)
        input_tokens = 0
        output_tokens = 0

        def _usage() -> TokenCount:
            return TokenCount(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            )

        while True:
            try:
                guard.check_step_budget()
            except StepBudgetExhausted:
                bound_logger.warning("turn_step_budget_exhausted", max_steps=guard.max_steps)
                yield Finish(usage=_usage(), stop_reason="step_budget_exhausted")
                return

            kwargs: dict[str, Any] = {
                "model": request.model,
                "system": system,
                "messages": history,
                "max_tokens": request.max_tokens,
            }
            if tools:
                kwargs["tools"] = tools
                kwargs["tool_choice"] = {"type": _TOOL_CHOICE.get(request.tool_choice, "auto")}

            async with self._client.messages.stream(**kwargs) as stream:
                async for chunk in stream.text_stream:
                    yield TextDelta(text=chunk)
                response = await stream.get_final_message()

            input_tokens += response.usage.input_tokens
            output_tokens += response.usage.output_tokens

            tool_use_blocks = [b for b in response.content if b.type == "tool_use"]
            if not tool_use_blocks or executor is None:
                yield Finish(usage=_usage(), stop_reason=response.stop_reason or "end_turn")
                return

            # Assistant turn must precede the tool_result user turn
            history.append({"role": "assistant", "content": response.content})

            tool_results: list[dict] = []
            stop = False
            for block in tool_use_blocks:
                yield ToolCall(tool_call_id=block.id, tool_name=block.name, input=dict(block.input))

                try:
                    guard.check_repetition(block.name, block.input)
                except RepetitionError as exc:
                    if guard.had_repetition_warning:
                        bound_logger.error("turn_repetition_second_strike", tool_name=block.name)
                        stop = True
                    else:
                        guard.had_repetition_warning = True
                        guard.reset_window()
                        bound_logger.warning("turn_repetition_first_strike", tool_name=block.name)
                    steer = (
                        f"SYSTEM: {exc}. Please try a completely different approach to achieve the same goal."
                    )
                    yield ToolResult(tool_call_id=block.id, tool_name=block.name, output=steer, is_error=True)
                    tool_results.append(
                        {"type": "tool_result", "tool_use_id": block.id, "content": steer, "is_error": True}
                    )
                    continue

                record = await executor.execute(block.name, dict(block.input), block.id)
                if record.status == ToolCallStatus.SUCCESS:
                    output, is_error = record.output, False
                else:
                    output, is_error = format_tool_error(record), True

                yield ToolResult(tool_call_id=block.id, tool_name=block.name, output=output, is_error=is_error)
                tool_results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": block.id,
                        "content": guard.truncate_tool_result(_stringify(output)),
                        "is_error": is_error,
                    }
                )

            if stop:
                yield Finish(usage=_usage(), stop_reason="repetition_detected")
                return

            history.append({"role": "user", "content": tool_results})

    async def complete(
        self,
        system: str,
        prompt: str,
        max_tokens: int = 1024,
        model: str | None = None,
    ) -> Completion:
        response = await invoke_with_retry(
            self._client,
            model=model or self.model,
            system=system,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
        )
        text = "".join(getattr(block, "text", "") for block in response.content)
        return Completion(text=text, usage=extract_token_count(response.usage))
