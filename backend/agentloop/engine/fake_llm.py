"""ScriptedLLMClient: deterministic LLMClient double.

Each ``stream_turn`` call consumes the next ``ScriptedTurn``; each
``complete`` call consumes the next scripted completion. Tool calls in a
scripted turn really go through the request's ``ToolExecutor``, so retry
and failure paths behave exactly as they do against the real model.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from agentloop.engine.llm import (
    Completion,
    Finish,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolResult,
    TurnRequest,
)
from agentloop.engine.tokens import TokenCount
from agentloop.engine.tools import format_tool_error
from agentloop.schemas.jobs import ToolCallStatus


@dataclass
class ScriptedToolCall:
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_call_id: str | None = None


@dataclass
class ScriptedTurn:
    """One scripted model turn.

    ``error`` is raised before anything is streamed. ``usage=None`` simulates a
    provider that reports no token counts.
    """

    text: str = "Done."
    tool_calls: list[ScriptedToolCall] = field(default_factory=list)
    usage: TokenCount | None = field(default_factory=lambda: TokenCount(100, 50, 150))
    stop_reason: str = "end_turn"
    error: BaseException | None = None
    chunk_size: int = 16


class ScriptedLLMClient:
    """Replays scripted turns and completions; records every request it sees."""

    def __init__(
        self,
        turns: list[ScriptedTurn] | None = None,
        completions: list[str | BaseException] | None = None,
        default_turn: ScriptedTurn | None = None,
        default_completion: str = "",
    ) -> None:
        self.turns = list(turns or [])
        self.completions = list(completions or [])
        self.default_turn = default_turn or ScriptedTurn()
        self.default_completion = default_completion
        self.requests: list[TurnRequest] = []
        self.prompts: list[tuple[str, str]] = []
        self._call_counter = 0

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        turn = self.turns.pop(0) if self.turns else self.default_turn
        if turn.error is not None:
            raise turn.error

        for start in range(0, len(turn.text), turn.chunk_size):
            yield TextDelta(text=turn.text[start : start + turn.chunk_size])

        for call in turn.tool_calls:
            self._call_counter += 1
            call_id = call.tool_call_id or f"toolu_{self._call_counter:04d}"
            yield ToolCall(tool_call_id=call_id, tool_name=call.tool_name, input=dict(call.input))
            if request.executor is None:
                continue
            record = await request.executor.execute(call.tool_name, dict(call.input), call_id)
            if record.status == ToolCallStatus.SUCCESS:
                yield ToolResult(tool_call_id=call_id, tool_name=call.tool_name, output=record.output)
            else:
                yield ToolResult(
                    tool_call_id=call_id,
                    tool_name=call.tool_name,
                    output=format_tool_error(record),
                    is_error=True,
                )

        yield Finish(usage=turn.usage, stop_reason=turn.stop_reason)

    async def complete(
        self,
        system: str,
        prompt: str,
        max_tokens: int = 1024,
        model: str | None = None,
    ) -> Completion:
        self.prompts.append((system, prompt))
        item = self.completions.pop(0) if self.completions else self.default_completion
        if isinstance(item, BaseException):
            raise item
        return Completion(text=item, usage=TokenCount(len(prompt) // 4, len(item) // 4, len(prompt) // 4 + len(item) // 4))
