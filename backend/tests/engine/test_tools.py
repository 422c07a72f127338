"""Tests for the tool union, registry and retrying executor."""

import pytest

from agentloop.core.exceptions import ToolExecutionError
from agentloop.engine.tools import (
    BuiltinTool,
    ExternalProtocolTool,
    ToolExecutor,
    ToolKind,
    ToolRegistry,
    WorkflowTool,
    format_tool_error,
    invoke_tool,
    tool_definitions,
)
from agentloop.schemas.jobs import ToolCallStatus

pytestmark = pytest.mark.unit


class FakeToolServer:
    def __init__(self):
        self.calls = []

    async def call_tool(self, server, tool_name, arguments):
        self.calls.append((server, tool_name, arguments))
        return {"server": server, "tool": tool_name}


class FakeWorkflowRunner:
    def __init__(self):
        self.runs = []

    async def run(self, workflow_id, arguments):
        self.runs.append((workflow_id, arguments))
        return f"workflow {workflow_id} finished"


async def echo(arguments):
    return {"echo": arguments}


# ============================================================================
# Dispatch
# ============================================================================


def test_each_variant_carries_its_kind():
    assert BuiltinTool("echo", "Echo", echo).kind == ToolKind.BUILTIN
    assert ExternalProtocolTool("search", "Search", "docs", FakeToolServer()).kind == ToolKind.EXTERNAL_PROTOCOL
    assert WorkflowTool("deploy", "Deploy", "wf-1", FakeWorkflowRunner()).kind == ToolKind.WORKFLOW


async def test_invoke_builtin():
    assert await invoke_tool(BuiltinTool("echo", "Echo", echo), {"a": 1}) == {"echo": {"a": 1}}


async def test_invoke_external_uses_remote_name_when_given():
    server = FakeToolServer()
    spec = ExternalProtocolTool("search", "Search", "docs", server, remote_name="full_text_search")

    result = await invoke_tool(spec, {"q": "retry"})

    assert result == {"server": "docs", "tool": "full_text_search"}
    assert server.calls == [("docs", "full_text_search", {"q": "retry"})]


async def test_invoke_workflow():
    runner = FakeWorkflowRunner()

    result = await invoke_tool(WorkflowTool("deploy", "Deploy", "wf-7", runner), {"env": "staging"})

    assert result == "workflow wf-7 finished"
    assert runner.runs == [("wf-7", {"env": "staging"})]


async def test_invoke_rejects_unknown_spec():
    with pytest.raises(TypeError):
        await invoke_tool(object(), {})


# ============================================================================
# Registry
# ============================================================================


def test_registry_rejects_duplicate_names():
    registry = ToolRegistry([BuiltinTool("echo", "Echo", echo)])
    with pytest.raises(ValueError):
        registry.register(BuiltinTool("echo", "Other echo", echo))


def test_registry_select_filters_by_allowed_names():
    registry = ToolRegistry(
        [BuiltinTool("echo", "Echo", echo), WorkflowTool("deploy", "Deploy", "wf-1", FakeWorkflowRunner())]
    )

    assert [t.name for t in registry.select(None)] == ["echo", "deploy"]
    assert [t.name for t in registry.select(["deploy", "missing"])] == ["deploy"]
    assert registry.select([]) == []
    assert registry.capabilities() == ["echo: Echo", "deploy: Deploy"]


def test_tool_definitions_shape():
    [definition] = tool_definitions([BuiltinTool("echo", "Echo", echo)])
    assert definition == {
        "name": "echo",
        "description": "Echo",
        "input_schema": {"type": "object", "properties": {}},
    }


# ============================================================================
# Executor
# ============================================================================


async def test_executor_success_first_attempt(fake_sleep, sleeps):
    executor = ToolExecutor([BuiltinTool("echo", "Echo", echo)], sleep=fake_sleep)

    record = await executor.execute("echo", {"x": 1}, "toolu_1")

    assert record.status == ToolCallStatus.SUCCESS
    assert record.output == {"echo": {"x": 1}}
    assert record.attempts == 1
    assert sleeps == []
    assert executor.records == [record]


async def test_executor_retries_then_succeeds(fake_sleep, sleeps):
    calls = {"n": 0}

    async def flaky(arguments):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ToolExecutionError("timeout")
        return "ok"

    executor = ToolExecutor([BuiltinTool("flaky", "Flaky", flaky)], sleep=fake_sleep)

    record = await executor.execute("flaky", {}, "toolu_1")

    assert record.status == ToolCallStatus.SUCCESS
    assert record.attempts == 2
    assert sleeps == [2.0]


async def test_executor_gives_up_after_max_attempts(fake_sleep, sleeps):
    async def broken(arguments):
        raise ToolExecutionError("connection refused")

    executor = ToolExecutor([BuiltinTool("broken", "Broken", broken)], sleep=fake_sleep)

    record = await executor.execute("broken", {"id": 3}, "toolu_9")

    assert record.status == ToolCallStatus.FAILED
    assert record.attempts == 3
    assert record.error == "ToolExecutionError: connection refused"
    assert sleeps == [2.0, 4.0]
    assert format_tool_error(record) == (
        "Error: tool 'broken' failed after 3 attempts: ToolExecutionError: connection refused"
    )


async def test_executor_unknown_tool_fails_without_retry(fake_sleep, sleeps):
    executor = ToolExecutor([], sleep=fake_sleep)

    record = await executor.execute("nope", {}, "toolu_1")

    assert record.status == ToolCallStatus.FAILED
    assert record.attempts == 1
    assert "Unknown tool" in record.error
    assert sleeps == []
