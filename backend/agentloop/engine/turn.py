"""TurnRunner: one streamed model turn with live event publishing.

Shared by the iteration engine and the autonomous controller's execute
phase. Every event the client yields is published to the job's channel as
soon as it arrives and folded into a single assistant message.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field

import structlog

from agentloop.core.exceptions import ModelTimeoutError
from agentloop.engine.llm import Finish, LLMClient, TextDelta, ToolCall, ToolResult, TurnRequest
from agentloop.engine.messages import MessageAccumulator
from agentloop.engine.tokens import TokenCount, estimate_message_tokens, estimate_total_tokens
from agentloop.events.publisher import EventPublisher, StreamEventType
from agentloop.schemas.jobs import ToolCallRecord, ToolCallStatus
from agentloop.schemas.messages import ChatMessage

logger = structlog.get_logger(__name__)


@dataclass
class TurnResult:
    message: ChatMessage
    usage: TokenCount
    usage_reported: bool
    stop_reason: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.message.text

    @property
    def failed_tool_calls(self) -> list[ToolCallRecord]:
        return [r for r in self.tool_calls if r.status == ToolCallStatus.FAILED]


class TurnRunner:
    def __init__(
        self,
        llm: LLMClient,
        publisher: EventPublisher | None = None,
        timeout_seconds: float = 0,
    ) -> None:
        self.llm = llm
        self.publisher = publisher
        self.timeout_seconds = timeout_seconds

    async def _publish(self, stream_id: str | None, event: dict) -> None:
        if self.publisher is None or stream_id is None:
            return
        await self.publisher.publish(stream_id, event)

    async def run(self, request: TurnRequest, stream_id: str | None = None, iteration: int = 0) -> TurnResult:
        """Run one turn and return the accumulated assistant message.

        Raises:
            ModelTimeoutError: the turn ran past ``timeout_seconds`` (0 disables).
            Exception: whatever the model client raised, unchanged.
        """
        message_id = str(uuid.uuid4())
        accumulator = MessageAccumulator(message_id)
        records_before = len(request.executor.records) if request.executor else 0
        finish: Finish | None = None

        await self._publish(
            stream_id,
            {"type": StreamEventType.MESSAGE_START, "message_id": message_id, "iteration": iteration},
        )

        try:
            async with asyncio.timeout(self.timeout_seconds or None):
                async for event in self.llm.stream_turn(request):
                    match event:
                        case TextDelta(text=text):
                            accumulator.add_text(text)
                            await self._publish(
                                stream_id,
                                {
                                    "type": StreamEventType.TEXT_DELTA,
                                    "message_id": message_id,
                                    "iteration": iteration,
                                    "delta": text,
                                },
                            )
                        case ToolCall(tool_call_id=call_id, tool_name=name, input=tool_input):
                            accumulator.add_tool_call(call_id, name, tool_input)
                            await self._publish(
                                stream_id,
                                {
                                    "type": StreamEventType.TOOL_CALL,
                                    "message_id": message_id,
                                    "iteration": iteration,
                                    "tool_call_id": call_id,
                                    "tool_name": name,
                                    "input": tool_input,
                                },
                            )
                        case ToolResult(tool_call_id=call_id, tool_name=name, output=output, is_error=is_error):
                            accumulator.add_tool_result(call_id, name, output, is_error=is_error)
                            await self._publish(
                                stream_id,
                                {
                                    "type": StreamEventType.TOOL_RESULT,
                                    "message_id": message_id,
                                    "iteration": iteration,
                                    "tool_call_id": call_id,
                                    "tool_name": name,
                                    "output": output,
                                    "is_error": is_error,
                                },
                            )
                        case Finish():
                            finish = event
        except TimeoutError as exc:
            logger.warning("model_call_timed_out", stream_id=stream_id, timeout_seconds=self.timeout_seconds)
            raise ModelTimeoutError(self.timeout_seconds) from exc

        message = accumulator.build()
        usage_reported = finish is not None and finish.usage is not None and finish.usage.total_tokens > 0
        if usage_reported:
            usage = finish.usage
        else:
            input_tokens = estimate_total_tokens(request.messages, request.system_prompt)
            output_tokens = estimate_message_tokens(message)
            usage = TokenCount(input_tokens, output_tokens, input_tokens + output_tokens)

        stop_reason = finish.stop_reason if finish is not None else "end_turn"
        tool_calls = list(request.executor.records[records_before:]) if request.executor else []

        await self._publish(
            stream_id,
            {
                "type": StreamEventType.MESSAGE_COMPLETE,
                "message_id": message_id,
                "iteration": iteration,
                "stop_reason": stop_reason,
                "usage": {
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "total_tokens": usage.total_tokens,
                },
            },
        )

        return TurnResult(
            message=message,
            usage=usage,
            usage_reported=usage_reported,
            stop_reason=stop_reason,
            tool_calls=tool_calls,
        )
