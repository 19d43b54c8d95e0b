"""Built-in tools offered to the agent.

Shell and browser tools are supplied by the caller; these cover the
completion signal, file access and managed processes.
"""

from __future__ import annotations

from pathlib import Path

from agentloop.runner.tool_registry import ToolRegistry
from agentloop.runtime.event_recorder import EventRecorder
from agentloop.runtime.process_registry import ProcessRegistry
from agentloop.tools import file, process, utility


def create_default_tools(
    processes: ProcessRegistry,
    workdir: str | Path = ".",
    recorder: EventRecorder | None = None,
) -> ToolRegistry:
    registry = ToolRegistry(recorder=recorder)
    utility.register_tools(registry)
    file.register_tools(registry, workdir)
    process.register_tools(registry, processes)
    return registry


__all__ = ["create_default_tools"]
