"""Tests for fence stripping, tolerant JSON parsing and overload retry."""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic._exceptions import OverloadedError
from tenacity import wait_none

from agentloop.engine.llm_helpers import invoke_with_retry, parse_json_response, strip_json_fences

pytestmark = pytest.mark.unit


def _make_overloaded_error():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(status_code=529, text="Overloaded", request=request)
    return OverloadedError(message="Overloaded", response=response, body=None)


def _make_mock_client(side_effect) -> MagicMock:
    client = MagicMock()
    client.messages = MagicMock()
    client.messages.create = AsyncMock(side_effect=side_effect)
    return client


_MESSAGES = [{"role": "user", "content": "test"}]


class TestStripJsonFences:
    def test_json_fence(self):
        assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        assert strip_json_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_json_fences('  {"a": 1}  ') == '{"a": 1}'


class TestParseJsonResponse:
    def test_plain_object(self):
        assert parse_json_response('{"goal_achieved": true}') == {"goal_achieved": True}

    def test_object_inside_prose(self):
        assert parse_json_response('Sure! {"steps": []} Hope that helps.') == {"steps": []}

    def test_no_json_raises(self):
        with pytest.raises(json.JSONDecodeError):
            parse_json_response("no structured answer here")


class TestInvokeWithRetry:
    async def test_success_on_first_try(self):
        response = MagicMock()
        client = _make_mock_client([response])

        result = await invoke_with_retry(client, "claude-sonnet-4-20250514", "system", _MESSAGES)

        assert result is response
        assert client.messages.create.call_count == 1

    async def test_retries_on_overloaded(self):
        response = MagicMock()
        client = _make_mock_client([_make_overloaded_error(), response])

        result = await invoke_with_retry.retry_with(wait=wait_none())(
            client, "claude-sonnet-4-20250514", "system", _MESSAGES
        )

        assert result is response
        assert client.messages.create.call_count == 2

    async def test_does_not_retry_on_other_errors(self):
        client = _make_mock_client(ValueError("Bad input"))

        with pytest.raises(ValueError, match="Bad input"):
            await invoke_with_retry(client, "claude-sonnet-4-20250514", "system", _MESSAGES)

        assert client.messages.create.call_count == 1

    async def test_exhausted_retries_reraise(self):
        client = _make_mock_client([_make_overloaded_error() for _ in range(4)])

        with pytest.raises(OverloadedError):
            await invoke_with_retry.retry_with(wait=wait_none())(
                client, "claude-sonnet-4-20250514", "system", _MESSAGES
            )

        assert client.messages.create.call_count == 4
