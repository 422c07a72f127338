"""MessageAccumulator: folds streamed model events into one assistant message."""

from __future__ import annotations

from typing import Any

from agentloop.schemas.messages import ChatMessage, TextPart, ToolPart


class MessageAccumulator:
    """Builds the assistant message for one turn.

    Text deltas merge into a single text part. Each tool call becomes a tool
    part in state ``input-available`` as soon as it is seen and moves to
    ``output-available`` when the result with the same call id arrives. A
    result with no matching call still produces a complete part with an
    empty input.
    """

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self._text: list[str] = []
        self._tools: dict[str, ToolPart] = {}

    def add_text(self, delta: str) -> None:
        self._text.append(delta)

    def add_tool_call(self, tool_call_id: str, tool_name: str, tool_input: dict[str, Any]) -> None:
        self._tools[tool_call_id] = ToolPart(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            input=tool_input,
            state="input-available",
        )

    def add_tool_result(self, tool_call_id: str, tool_name: str, output: Any, is_error: bool = False) -> None:
        part = self._tools.get(tool_call_id)
        if part is None:
            self._tools[tool_call_id] = ToolPart(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                input={},
                state="output-available",
                output=output,
                is_error=is_error,
            )
            return
        part.state = "output-available"
        part.output = output
        part.is_error = is_error

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def tool_parts(self) -> list[ToolPart]:
        return list(self._tools.values())

    def build(self) -> ChatMessage:
        parts: list = []
        if self._text:
            parts.append(TextPart(text=self.text))
        parts.extend(part.model_copy() for part in self._tools.values())
        return ChatMessage(id=self.message_id, role="assistant", parts=parts)
