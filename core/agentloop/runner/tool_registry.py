"""Tool registration and execution for the agent loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentloop.llm.provider import Tool, ToolResult, ToolUse
from agentloop.loop.state import ToolInvocationRecord
from agentloop.runner.tool_results import ErrorResult, SignalResult, ToolCategory, to_outcome
from agentloop.runtime.event_recorder import EventRecorder

logger = logging.getLogger(__name__)

DONE_TOOL = "done"


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: Tool
    executor: Callable[[dict], Any]
    category: ToolCategory = ToolCategory.OTHER


class ToolRegistry:
    """
    Holds the tools offered to the model and executes their calls.

    Every call is normalised into a tagged outcome, journaled as a
    ToolInvocationRecord for the current iteration, and traced. Executors may
    be sync or async; an executor that raises produces an ErrorResult fed back
    to the model rather than aborting the iteration.
    """

    def __init__(self, recorder: EventRecorder | None = None, done_tool: str = DONE_TOOL):
        self._tools: dict[str, RegisteredTool] = {}
        self.recorder = recorder
        self.done_tool = done_tool
        self.done_signaled = False
        self.done_summary: str | None = None
        self._iteration: int | None = None
        self._journal: list[ToolInvocationRecord] = []

    # -------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------

    def register(
        self,
        name: str,
        tool: Tool,
        executor: Callable[[dict], Any],
        category: ToolCategory = ToolCategory.OTHER,
    ) -> None:
        """
        Register a single tool with its executor. Re-registering a name replaces it.

        Args:
            name: Tool name (must match tool.name)
            tool: Tool definition
            executor: Function (sync or async) that takes the input dict
            category: What kind of outcome the tool produces. Plain dict results
                from EXEC, WRITE and BROWSER tools are reshaped into the
                matching tagged result (see ``to_outcome``).
        """
        if name != tool.name:
            raise ValueError(f"Tool name mismatch: {name!r} != {tool.name!r}")
        self._tools[name] = RegisteredTool(tool=tool, executor=executor, category=category)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        category: ToolCategory = ToolCategory.OTHER,
    ) -> None:
        """
        Register a function as a tool, generating the Tool schema from its signature.

        Args:
            func: Function to register (sync or async)
            name: Tool name (defaults to function name)
            description: Tool description (defaults to docstring)
            category: What kind of outcome the tool produces
        """
        tool_name = name or func.__name__
        tool_desc = description or inspect.getdoc(func) or f"Execute {tool_name}"

        sig = inspect.signature(func)
        properties: dict[str, Any] = {}
        required = []

        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls"):
                continue

            param_type = "string"
            annotation = param.annotation
            if annotation is int or annotation == "int":
                param_type = "integer"
            elif annotation is float or annotation == "float":
                param_type = "number"
            elif annotation is bool or annotation == "bool":
                param_type = "boolean"
            elif annotation is dict or annotation == "dict":
                param_type = "object"
            elif annotation is list or annotation == "list":
                param_type = "array"

            properties[param_name] = {"type": param_type}
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        tool = Tool(
            name=tool_name,
            description=tool_desc,
            parameters={"type": "object", "properties": properties, "required": required},
        )

        def executor(inputs: dict) -> Any:
            return func(**inputs)

        self.register(tool_name, tool, executor, category)

    def tool(
        self,
        name: str | None = None,
        category: ToolCategory = ToolCategory.OTHER,
    ) -> Callable[[Callable], Callable]:
        """Decorator form of ``register_function``."""

        def decorator(func: Callable) -> Callable:
            self.register_function(func, name=name, category=category)
            return func

        return decorator

    def merge(self, other: ToolRegistry) -> None:
        """Copy another registry's tools in; its entries win on name clashes."""
        self._tools.update(other._tools)

    def get_tools(self) -> list[Tool]:
        return [rt.tool for rt in self._tools.values()]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_registered_names(self) -> list[str]:
        return list(self._tools)

    # -------------------------------------------------------------------
    # Iteration journal
    # -------------------------------------------------------------------

    def begin_iteration(self, iteration: int) -> None:
        """Reset the per-iteration journal; trace events are tagged with ``iteration``."""
        self._iteration = iteration
        self._journal = []

    def drain_invocations(self) -> list[ToolInvocationRecord]:
        journal, self._journal = self._journal, []
        return journal

    # -------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------

    async def execute(self, tool_use: ToolUse) -> ToolResult:
        """Run one tool call. Never raises for executor failures."""
        args = tool_use.input if isinstance(tool_use.input, dict) else {}
        if self.recorder:
            self.recorder.record_tool_call(self._iteration, tool_use.name, args)

        registered = self._tools.get(tool_use.name)
        start = time.monotonic()

        if registered is None:
            outcome = ErrorResult(error=f"Unknown tool: {tool_use.name}")
            category = ToolCategory.OTHER
            if self.recorder:
                self.recorder.record_tool_error(self._iteration, tool_use.name, outcome.error, 0)
        else:
            category = registered.category
            try:
                raw = registered.executor(args)
                if asyncio.iscoroutine(raw) or inspect.isawaitable(raw):
                    raw = await raw
                outcome = to_outcome(raw, category)
            except Exception as e:
                duration_ms = int((time.monotonic() - start) * 1000)
                logger.warning("Tool '%s' failed: %s", tool_use.name, e)
                outcome = ErrorResult(error=str(e) or type(e).__name__)
                if self.recorder:
                    self.recorder.record_tool_error(self._iteration, tool_use.name, e, duration_ms)
            else:
                if self.recorder:
                    duration_ms = int((time.monotonic() - start) * 1000)
                    self.recorder.record_tool_result(self._iteration, tool_use.name, outcome, duration_ms)

        duration_ms = int((time.monotonic() - start) * 1000)
        if tool_use.name == self.done_tool and not isinstance(outcome, ErrorResult):
            self.done_signaled = True
            summary = outcome.summary_text if isinstance(outcome, SignalResult) else args.get("summary")
            if summary:
                self.done_summary = str(summary)

        if category == ToolCategory.OTHER:
            category = outcome.category
        self._journal.append(
            ToolInvocationRecord(
                name=tool_use.name,
                args=dict(args),
                result=outcome,
                duration_ms=duration_ms,
                tool_use_id=tool_use.id,
                category=category,
            )
        )
        return ToolResult(
            tool_use_id=tool_use.id,
            content=outcome.to_content(),
            is_error=isinstance(outcome, ErrorResult),
        )
