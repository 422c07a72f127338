"""Tool registry and executor.

Tools come from three origins and are represented as one tagged union:

- ``BuiltinTool``: an in-process coroutine.
- ``ExternalProtocolTool``: a tool exposed by an external tool server,
  reached through an ``ExternalToolClient``.
- ``WorkflowTool``: a stored workflow run through a ``WorkflowRunner``.

``invoke_tool`` dispatches on the variant with ``match``; nothing probes
object shapes at registration time.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import structlog

from agentloop.schemas.jobs import ToolCallRecord, ToolCallStatus

logger = structlog.get_logger(__name__)


class ToolKind(StrEnum):
    BUILTIN = "builtin"
    EXTERNAL_PROTOCOL = "external_protocol"
    WORKFLOW = "workflow"


@runtime_checkable
class ExternalToolClient(Protocol):
    async def call_tool(self, server: str, tool_name: str, arguments: dict) -> Any: ...


@runtime_checkable
class WorkflowRunner(Protocol):
    async def run(self, workflow_id: str, arguments: dict) -> Any: ...


@dataclass(frozen=True)
class BuiltinTool:
    name: str
    description: str
    invoke: Callable[[dict], Awaitable[Any]]
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    kind: ToolKind = field(default=ToolKind.BUILTIN, init=False)


@dataclass(frozen=True)
class ExternalProtocolTool:
    name: str
    description: str
    server: str
    client: ExternalToolClient
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    remote_name: str | None = None  # name on the server when it differs from ``name``
    kind: ToolKind = field(default=ToolKind.EXTERNAL_PROTOCOL, init=False)


@dataclass(frozen=True)
class WorkflowTool:
    name: str
    description: str
    workflow_id: str
    runner: WorkflowRunner
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    kind: ToolKind = field(default=ToolKind.WORKFLOW, init=False)


ToolSpec = BuiltinTool | ExternalProtocolTool | WorkflowTool


async def invoke_tool(spec: ToolSpec, arguments: dict) -> Any:
    match spec:
        case BuiltinTool(invoke=invoke):
            return await invoke(arguments)
        case ExternalProtocolTool(server=server, client=client, remote_name=remote_name):
            return await client.call_tool(server, remote_name or spec.name, arguments)
        case WorkflowTool(workflow_id=workflow_id, runner=runner):
            return await runner.run(workflow_id, arguments)
        case _:
            raise TypeError(f"Unsupported tool spec: {type(spec).__name__}")


class ToolRegistry:
    """Name-indexed set of tools available to the engine."""

    def __init__(self, tools: list[ToolSpec] | None = None) -> None:
        self._tools: dict[str, ToolSpec] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolSpec) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def select(self, allowed: list[str] | None) -> list[ToolSpec]:
        """Tools visible to a job; ``None`` means all of them."""
        if allowed is None:
            return list(self._tools.values())
        return [self._tools[name] for name in allowed if name in self._tools]

    def capabilities(self) -> list[str]:
        return [f"{t.name}: {t.description}" for t in self._tools.values()]


def tool_definitions(tools: list[ToolSpec]) -> list[dict]:
    """Anthropic ``tools=`` payload for the given specs."""
    return [
        {"name": t.name, "description": t.description, "input_schema": t.input_schema}
        for t in tools
    ]


def format_tool_error(record: ToolCallRecord) -> str:
    return f"Error: tool '{record.tool_name}' failed after {record.attempts} attempts: {record.error}"


class ToolExecutor:
    """Runs tool calls with bounded retry.

    A failing call is retried with a ``base_delay * 2 ** attempt`` second
    pause (2s then 4s by default); after ``max_attempts`` failures the call
    is reported as failed and its error is handed back to the model as the
    tool result. Every call is kept in ``records`` for the job's history.
    """

    def __init__(
        self,
        tools: list[ToolSpec],
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._tools = {t.name: t for t in tools}
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self.records: list[ToolCallRecord] = []

    @property
    def tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    async def execute(self, tool_name: str, arguments: dict, tool_call_id: str) -> ToolCallRecord:
        started_at = datetime.now(UTC)
        start = time.monotonic()
        bound = logger.bind(tool_name=tool_name, tool_call_id=tool_call_id)

        spec = self._tools.get(tool_name)
        if spec is None:
            record = ToolCallRecord(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                input=arguments,
                error=f"Unknown tool '{tool_name}'",
                status=ToolCallStatus.FAILED,
                attempts=1,
                started_at=started_at,
            )
            bound.warning("tool_unknown")
            self.records.append(record)
            return record

        attempt = 0
        last_error = ""
        while attempt < self.max_attempts:
            attempt += 1
            try:
                output = await invoke_tool(spec, arguments)
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                if attempt >= self.max_attempts:
                    break
                delay = self.base_delay * 2**attempt
                bound.warning(
                    "tool_call_retrying",
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                await self._sleep(delay)
                continue

            record = ToolCallRecord(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                input=arguments,
                output=output,
                status=ToolCallStatus.SUCCESS,
                attempts=attempt,
                duration_ms=int((time.monotonic() - start) * 1000),
                started_at=started_at,
            )
            self.records.append(record)
            return record

        record = ToolCallRecord(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            input=arguments,
            error=last_error,
            status=ToolCallStatus.FAILED,
            attempts=attempt,
            duration_ms=int((time.monotonic() - start) * 1000),
            started_at=started_at,
        )
        bound.error("tool_call_failed", attempts=attempt, error=last_error)
        self.records.append(record)
        return record
