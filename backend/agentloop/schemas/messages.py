"""Conversation message schema shared by the engine, the store and the model client.

Messages are a list of typed parts so that a single assistant turn can carry
its merged text plus every tool call with its input and, once available, its
output. The shape is JSON-friendly and persisted as-is on the job record.
"""

import uuid
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolPart(BaseModel):
    """One tool invocation inside an assistant message.

    ``state`` is ``input-available`` as soon as the call is seen and becomes
    ``output-available`` when the matching result arrives.
    """

    type: Literal["tool"] = "tool"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    state: Literal["input-available", "output-available"] = "input-available"
    output: Any = None
    is_error: bool = False


class FilePart(BaseModel):
    type: Literal["file"] = "file"
    url: str
    media_type: str | None = None


MessagePart = Annotated[TextPart | ToolPart | FilePart, Field(discriminator="type")]


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal["system", "user", "assistant"]
    parts: list[MessagePart] = Field(default_factory=list)

    @classmethod
    def from_text(cls, role: str, text: str, message_id: str | None = None) -> "ChatMessage":
        if message_id is None:
            return cls(role=role, parts=[TextPart(text=text)])
        return cls(id=message_id, role=role, parts=[TextPart(text=text)])

    @property
    def text(self) -> str:
        """All text parts joined with spaces."""
        return " ".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_parts(self) -> list[ToolPart]:
        return [p for p in self.parts if isinstance(p, ToolPart)]
