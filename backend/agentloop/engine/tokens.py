"""Context budget manager: token estimation, window limits and threshold checks.

Pure functions with no I/O. Estimates are deliberately rough (about four
characters per token) and are only used when the provider does not report
usage, or to size the next request before it is sent.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

from agentloop.schemas.messages import ChatMessage, FilePart, TextPart, ToolPart

# Per-model context windows (tokens). Looked up by exact name, then by the
# longest known prefix so dated model ids resolve to their family.
MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "gpt-4": 8192,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-3.5-turbo": 16385,
    "claude-3-opus": 200000,
    "claude-3-sonnet": 200000,
    "claude-3-haiku": 200000,
    "claude-3-5-sonnet": 200000,
    "claude-3-5-haiku": 200000,
    "claude-3-7-sonnet": 200000,
    "claude-sonnet-4": 200000,
    "claude-opus-4": 200000,
    "gemini-pro": 32768,
    "gemini-1.5-pro": 2097152,
    "gemini-1.5-flash": 1048576,
}

PROVIDER_DEFAULT_LIMITS: dict[str, int] = {
    "openai": 128000,
    "anthropic": 200000,
    "google": 1048576,
    "groq": 32768,
}

DEFAULT_CONTEXT_LIMIT = 128000
SUMMARIZATION_THRESHOLD_RATIO = 0.8

# Lower-cased substrings that identify a provider's context overflow error
CONTEXT_EXCEEDED_SIGNATURES = (
    "context length",
    "token limit",
    "maximum context",
    "context window",
    "prompt is too long",
)

MESSAGE_OVERHEAD_TOKENS = 3
TOOL_OVERHEAD_TOKENS = 50
ATTACHMENT_OVERHEAD_TOKENS = 20

_PROVIDER_PREFIXES = (
    ("claude", "anthropic"),
    ("gpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("gemini", "google"),
    ("llama", "groq"),
    ("mixtral", "groq"),
)


@dataclass(frozen=True)
class TokenCount:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class CumulativeTokenCount:
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    iterations: int = 0


@dataclass(frozen=True)
class SummarizationDecision:
    needed: bool
    reason: str | None  # "proactive" or None
    threshold: int
    current: int


def infer_provider(model: str | None) -> str | None:
    if not model:
        return None
    name = model.split("/", 1)[-1].lower()
    for prefix, provider in _PROVIDER_PREFIXES:
        if name.startswith(prefix):
            return provider
    return None


def context_window_limit(model: str | None, provider: str | None = None) -> int:
    """Token budget for ``model``: per-model, then provider default, then 128,000."""
    if not model:
        return DEFAULT_CONTEXT_LIMIT

    if "/" in model:
        provider = provider or model.split("/", 1)[0]
        model = model.split("/", 1)[1]

    if model in MODEL_CONTEXT_LIMITS:
        return MODEL_CONTEXT_LIMITS[model]

    matches = [name for name in MODEL_CONTEXT_LIMITS if model.startswith(name)]
    if matches:
        return MODEL_CONTEXT_LIMITS[max(matches, key=len)]

    provider = provider or infer_provider(model)
    return PROVIDER_DEFAULT_LIMITS.get(provider or "", DEFAULT_CONTEXT_LIMIT)


def extract_token_count(usage: Any) -> TokenCount:
    """Normalise a provider usage object (or dict) into a TokenCount.

    Accepts prompt/completion or input/output naming; a missing total is
    computed from the parts.
    """
    if usage is None:
        return TokenCount()

    def _get(*names: str) -> int | None:
        for name in names:
            value = usage.get(name) if isinstance(usage, dict) else getattr(usage, name, None)
            if isinstance(value, int):
                return value
        return None

    input_tokens = _get("prompt_tokens", "input_tokens") or 0
    output_tokens = _get("completion_tokens", "output_tokens") or 0
    total = _get("total_tokens")
    return TokenCount(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total if total is not None else input_tokens + output_tokens,
    )


def calculate_cumulative_tokens(iterations: list[Any]) -> CumulativeTokenCount:
    """Sum input and output tokens across iteration records."""
    total_in = sum(i.input_tokens for i in iterations)
    total_out = sum(i.output_tokens for i in iterations)
    return CumulativeTokenCount(
        total_input_tokens=total_in,
        total_output_tokens=total_out,
        total_tokens=total_in + total_out,
        iterations=len(iterations),
    )


def should_summarize(
    current_tokens: int,
    model: str | None,
    threshold_ratio: float = SUMMARIZATION_THRESHOLD_RATIO,
) -> SummarizationDecision:
    limit = context_window_limit(model)
    threshold = math.floor(limit * threshold_ratio)
    if current_tokens >= threshold:
        return SummarizationDecision(needed=True, reason="proactive", threshold=threshold, current=current_tokens)
    return SummarizationDecision(needed=False, reason=None, threshold=threshold, current=current_tokens)


def is_context_exceeded(error: BaseException | str | None, current_tokens: int, model: str | None) -> bool:
    """True when ``error`` looks like a context overflow or usage already fills the window."""
    if current_tokens >= context_window_limit(model):
        return True
    if error is None:
        return False
    text = str(error).lower()
    return any(signature in text for signature in CONTEXT_EXCEEDED_SIGNATURES)


def _json_tokens(value: Any) -> int:
    if value is None:
        return 0
    return math.ceil(len(json.dumps(value, default=str)) / 4)


def estimate_message_tokens(message: ChatMessage) -> int:
    tokens = MESSAGE_OVERHEAD_TOKENS
    for part in message.parts:
        match part:
            case TextPart(text=text):
                tokens += math.ceil(len(text) / 4)
            case ToolPart(input=tool_input, output=output):
                tokens += TOOL_OVERHEAD_TOKENS + _json_tokens(tool_input or None) + _json_tokens(output)
            case FilePart():
                tokens += ATTACHMENT_OVERHEAD_TOKENS
    return tokens


def estimate_total_tokens(messages: list[ChatMessage], system_prompt: str | None = None) -> int:
    total = math.ceil(len(system_prompt) / 4) if system_prompt else 0
    return total + sum(estimate_message_tokens(m) for m in messages)
