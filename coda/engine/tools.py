"""Tool registry and the sequential tool execution coordinator.

Provides:
- Tool / ToolOutput: the capability contract a tool implements
- FunctionTool: adapts a plain async function into a Tool
- LocalToolBackend: in-process name -> Tool mapping
- ToolRegistry: ordered lookup across pluggable backends
- ToolCoordinator: runs one batch of tool calls in emission order
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from coda.engine.cancellation import CancellationToken
from coda.engine.errors import OrphanedToolResultError, ToolExecutionError
from coda.engine.models import ToolCall, ToolResult

logger = logging.getLogger(__name__)

# Called after each tool completes; may be sync or async
ResultCallback = Callable[[ToolCall, ToolResult], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# Tool contract
# ---------------------------------------------------------------------------


@dataclass
class ToolOutput:
    """What a tool returns: data on success, error text on failure."""

    success: bool
    data: Any = None
    error: str | None = None

    def to_text(self) -> str:
        if not self.success:
            return self.error or "tool reported failure"
        if self.data is None:
            return "(no output)"
        if isinstance(self.data, str):
            return self.data
        return json.dumps(self.data, ensure_ascii=False, default=str)


class Tool(Protocol):
    name: str
    description: str
    input_schema: dict[str, Any]

    async def execute(self, input: dict[str, Any]) -> ToolOutput: ...


class FunctionTool:
    """Wraps an async function called with the tool input as **kwargs.

    Plain return values count as success; returning a ToolOutput passes
    through untouched.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[..., Awaitable[Any]],
        schema: dict[str, Any],
        description: str | None = None,
    ) -> None:
        self.name = name
        self.description = description or schema.get("description", "")
        self.input_schema = schema
        self._handler = handler

    async def execute(self, input: dict[str, Any]) -> ToolOutput:
        result = await self._handler(**input)
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(success=True, data=result)


def tool_definition(tool: Tool) -> dict[str, Any]:
    """Anthropic API tool definition."""
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": tool.input_schema,
    }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolBackend(Protocol):
    def get(self, name: str) -> Tool | None: ...

    def list_tools(self) -> list[Tool]: ...


class LocalToolBackend:
    """Tools living in this process, keyed by name."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        handler: Callable[..., Awaitable[Any]],
        schema: dict[str, Any],
    ) -> None:
        """Register an async function with its JSON schema."""
        self.register(FunctionTool(name, handler, schema))

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())


class ToolRegistry:
    """Single lookup surface over ordered backends.

    The first backend that knows a name wins, for both get() and the
    definitions sent to the model.  Read-only from the engine's side.
    """

    def __init__(self, backends: list[ToolBackend] | None = None) -> None:
        self._backends: list[ToolBackend] = list(backends or [])

    def add_backend(self, backend: ToolBackend, *, first: bool = False) -> None:
        if first:
            self._backends.insert(0, backend)
        else:
            self._backends.append(backend)

    def get(self, name: str) -> Tool | None:
        for backend in self._backends:
            tool = backend.get(name)
            if tool is not None:
                return tool
        return None

    def list_tools(self) -> list[Tool]:
        seen: dict[str, Tool] = {}
        for backend in self._backends:
            for tool in backend.list_tools():
                seen.setdefault(tool.name, tool)
        return list(seen.values())

    def tool_definitions(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """Definitions in Anthropic API format, optionally limited to names."""
        tools = self.list_tools()
        if names is not None:
            wanted = set(names)
            tools = [t for t in tools if t.name in wanted]
        return [tool_definition(t) for t in tools]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


@dataclass
class ToolExecutionStats:
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    total_duration_ms: int = 0
    fastest_ms: int | None = None
    slowest_ms: int = 0

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.executed if self.executed else 0.0

    @property
    def success_rate(self) -> float:
        return (self.executed - self.failed) / self.executed if self.executed else 1.0

    def record(self, result: ToolResult) -> None:
        self.executed += 1
        if result.is_error:
            self.failed += 1
        self.total_duration_ms += result.duration_ms
        self.slowest_ms = max(self.slowest_ms, result.duration_ms)
        if self.fastest_ms is None or result.duration_ms < self.fastest_ms:
            self.fastest_ms = result.duration_ms


class ToolCoordinator:
    """Executes tool calls one at a time, in the order the model emitted them.

    Later calls may depend on side effects of earlier ones, so nothing is
    fanned out.  Every failure becomes an error ToolResult and the batch
    keeps going.  Ids are tracked per turn: a repeated id is skipped, and
    a result for an unknown id is rejected.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry
        self._known_ids: set[str] = set()
        self._executed_ids: set[str] = set()
        self.stats = ToolExecutionStats()

    def begin_turn(self) -> None:
        """Forget the previous turn's tool-call ids."""
        self._known_ids.clear()
        self._executed_ids.clear()

    def check_result(self, result: ToolResult) -> None:
        if result.tool_call_id not in self._known_ids:
            raise OrphanedToolResultError(
                f"Tool result references unknown tool call id {result.tool_call_id!r}"
            )

    async def execute(
        self,
        tool_calls: list[ToolCall],
        cancellation_token: CancellationToken | None = None,
        on_result: ResultCallback | None = None,
        allowed: set[str] | None = None,
    ) -> list[ToolResult]:
        """Run the batch and return results for the calls that ran.

        Cancellation is checked before each call; a call that has started
        always runs to completion and is reported.  When `allowed` is given,
        names outside it are treated as unknown tools.
        """
        self._known_ids.update(call.id for call in tool_calls)
        results: list[ToolResult] = []

        for call in tool_calls:
            if cancellation_token is not None and cancellation_token.cancelled:
                remaining = len(tool_calls) - tool_calls.index(call)
                self.stats.skipped += remaining
                logger.info("Cancellation requested, skipping %d pending tool call(s)", remaining)
                break

            if call.id in self._executed_ids:
                logger.warning("Skipping duplicate tool call id %s (%s)", call.id, call.name)
                self.stats.skipped += 1
                continue
            self._executed_ids.add(call.id)

            result = await self._execute_one(call, allowed)
            self.check_result(result)
            self.stats.record(result)
            results.append(result)

            if on_result is not None:
                outcome = on_result(call, result)
                if inspect.isawaitable(outcome):
                    await outcome

        return results

    async def _execute_one(self, call: ToolCall, allowed: set[str] | None = None) -> ToolResult:
        tool = self._registry.get(call.name) if allowed is None or call.name in allowed else None
        if tool is None:
            logger.warning("Model requested unknown tool: %s", call.name)
            return ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                content=f"Tool not implemented: {call.name}",
                is_error=True,
            )

        start_time = time.monotonic()
        try:
            output = await tool.execute(call.input)
            if not output.success:
                raise ToolExecutionError(call.name, output.to_text())
            content, is_error = output.to_text(), False
        except ToolExecutionError as e:
            logger.info("Tool %s reported failure: %s", call.name, e)
            content, is_error = f"Tool error: {e}", True
        except Exception as e:
            logger.exception("Tool execution error for %s", call.name)
            content, is_error = f"Tool error: {call.name}: {e}", True
        duration_ms = int((time.monotonic() - start_time) * 1000)

        return ToolResult(
            tool_call_id=call.id,
            tool_name=call.name,
            content=content,
            is_error=is_error,
            duration_ms=duration_ms,
        )
