"""Shared LLM utility functions for retry, fence-stripping, and JSON parsing.

This module provides:
- strip_json_fences: Remove markdown code fences from LLM output
- parse_json_response: Parse a JSON object from LLM output, tolerating prose around it
- invoke_with_retry: Retry Anthropic messages.create() on 529 OverloadedError
"""

import json
import re
from typing import Any

import structlog
from anthropic._exceptions import OverloadedError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


def strip_json_fences(content: str) -> str:
    """Remove markdown code fences wrapping JSON output."""
    content = content.strip()
    if content.startswith("```"):
        first_newline = content.find("\n")
        if first_newline != -1:
            content = content[first_newline + 1 :]
        if content.endswith("```"):
            content = content[:-3].rstrip()
    return content


def parse_json_response(content: str) -> Any:
    """Parse JSON from an LLM response.

    Fences are stripped first. If the remainder is not valid JSON, the first
    ``{...}`` span is tried instead, since models often wrap the object in a
    sentence of prose.

    Raises:
        json.JSONDecodeError: no parseable JSON was found.
    """
    stripped = strip_json_fences(content)
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        match = _OBJECT_PATTERN.search(stripped)
        if match is None:
            raise
        return json.loads(match.group(0))


@retry(
    retry=retry_if_exception_type(OverloadedError),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=2, min=2, max=30),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "claude_overloaded_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)
async def invoke_with_retry(
    client: Any,
    model: str,
    system: str,
    messages: list[dict],
    max_tokens: int = 4096,
) -> Any:
    """Invoke Anthropic messages.create() with retry on 529 overload.

    Retries up to 3 times with exponential backoff (2s, 4s, 8s max 30s).
    Only OverloadedError is retried; every other exception propagates.

    Returns:
        The raw Anthropic Message (callers read ``content`` and ``usage``).
    """
    return await client.messages.create(
        model=model,
        system=system,
        messages=messages,
        max_tokens=max_tokens,
    )
