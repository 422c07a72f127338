"""Summarizer: compresses older conversation history into one synthetic message.

The two most recent user messages, each with the assistant reply that
directly follows it, are kept verbatim. Everything else is condensed by a
single model call and replaced with a system message placed before the
preserved exchanges. Summarization fails open: any error returns the
original messages untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from agentloop.engine.llm import LLMClient
from agentloop.engine.prompts import SUMMARY_SYSTEM_PROMPT, build_summary_prompt
from agentloop.engine.tokens import estimate_total_tokens
from agentloop.schemas.messages import ChatMessage

logger = structlog.get_logger(__name__)

PRESERVED_EXCHANGES = 2


@dataclass
class SummarizationResult:
    summary_text: str
    messages_summarized: int
    token_count_before: int
    token_count_after: int
    optimized_messages: list[ChatMessage] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.messages_summarized > 0


def split_preserved(messages: list[ChatMessage]) -> tuple[list[ChatMessage], list[ChatMessage]]:
    """Split into (to_summarize, preserved), both in chronological order."""
    keep: set[int] = set()
    users = 0
    for i in range(len(messages) - 1, -1, -1):
        if users >= PRESERVED_EXCHANGES:
            break
        if messages[i].role != "user":
            continue
        users += 1
        keep.add(i)
        if i + 1 < len(messages) and messages[i + 1].role == "assistant":
            keep.add(i + 1)

    to_summarize = [m for i, m in enumerate(messages) if i not in keep]
    preserved = [m for i, m in enumerate(messages) if i in keep]
    return to_summarize, preserved


def _conversation_text(messages: list[ChatMessage]) -> str:
    lines = []
    for message in messages:
        text = message.text
        for part in message.tool_parts:
            text += f" [tool {part.tool_name} -> {str(part.output)[:200]}]"
        lines.append(f"{message.role}: {text.strip()}")
    return "\n\n".join(lines)


class Summarizer:
    def __init__(self, llm: LLMClient, model: str | None = None, max_tokens: int = 1024) -> None:
        self.llm = llm
        self.model = model
        self.max_tokens = max_tokens

    async def summarize(self, messages: list[ChatMessage], system_prompt: str = "") -> SummarizationResult:
        before = estimate_total_tokens(messages, system_prompt)
        unchanged = SummarizationResult(
            summary_text="",
            messages_summarized=0,
            token_count_before=before,
            token_count_after=before,
            optimized_messages=list(messages),
        )

        to_summarize, preserved = split_preserved(messages)
        if not to_summarize:
            return unchanged

        logger.info(
            "context_summarizing",
            messages=len(messages),
            messages_to_summarize=len(to_summarize),
            token_count_before=before,
        )

        try:
            completion = await self.llm.complete(
                SUMMARY_SYSTEM_PROMPT,
                build_summary_prompt(_conversation_text(to_summarize)),
                max_tokens=self.max_tokens,
                model=self.model,
            )
        except Exception as exc:
            logger.error(
                "context_summary_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return unchanged

        summary_text = completion.text.strip()
        if not summary_text:
            logger.warning("context_summary_empty")
            return unchanged

        summary_message = ChatMessage.from_text(
            "system",
            f"Previous conversation summary ({len(to_summarize)} messages):\n\n{summary_text}",
        )
        optimized = [summary_message, *preserved]
        after = estimate_total_tokens(optimized, system_prompt)

        logger.info(
            "context_summarized",
            messages_summarized=len(to_summarize),
            token_count_before=before,
            token_count_after=after,
        )
        return SummarizationResult(
            summary_text=summary_text,
            messages_summarized=len(to_summarize),
            token_count_before=before,
            token_count_after=after,
            optimized_messages=optimized,
        )
