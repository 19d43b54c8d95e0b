"""
Process tools: let the agent run long-lived commands (dev servers,
watchers) through the ProcessRegistry instead of a blocking shell call.
"""

from __future__ import annotations

import json
import re

from agentloop.errors import ProcessSpawnError
from agentloop.runner.tool_registry import ToolRegistry
from agentloop.runner.tool_results import ErrorResult, OpaqueResult, ProcessResult, ToolCategory
from agentloop.runtime.process_registry import DEFAULT_OUTPUT_LINES, ProcessRegistry


def register_tools(registry: ToolRegistry, processes: ProcessRegistry) -> None:
    """Register startProcess, stopProcess, listProcesses and getProcessOutput."""

    @registry.tool(name="startProcess", category=ToolCategory.PROCESS)
    async def start_process(
        name: str,
        command: str,
        cwd: str = "",
        ready_pattern: str = "",
        timeout: float = 30.0,
    ) -> ProcessResult | ErrorResult:
        """
        Start a long-running background process, replacing any process with the same name.

        Args:
            name: Unique name for the process (e.g. "dev-server")
            command: Shell command to run
            cwd: Working directory (defaults to the agent's)
            ready_pattern: Regex; wait until an output line matches it
            timeout: Seconds to wait for ready_pattern
        """
        try:
            info = await processes.start(
                name,
                command,
                cwd=cwd or None,
                ready_pattern=ready_pattern or None,
                timeout=timeout,
            )
        except ProcessSpawnError as e:
            return ErrorResult(error=str(e))
        except re.error as e:
            return ErrorResult(error=f"Invalid ready_pattern: {e}")
        output = processes.get_output(name, 20) or {"stdout": "", "stderr": ""}
        return ProcessResult(
            name=name,
            pid=info.pid,
            running=processes.is_running(name),
            detail=output["stdout"],
        )

    @registry.tool(name="stopProcess", category=ToolCategory.PROCESS)
    async def stop_process(name: str) -> ProcessResult | ErrorResult:
        """
        Stop a background process and everything it spawned.

        Args:
            name: Name given to startProcess
        """
        if not await processes.stop(name):
            return ErrorResult(error=f"No process named '{name}'")
        return ProcessResult(name=name, running=False, detail="stopped")

    @registry.tool(name="listProcesses", category=ToolCategory.PROCESS)
    def list_processes() -> OpaqueResult:
        """List background processes with their pid and uptime."""
        return OpaqueResult(
            value=[
                {
                    "name": p.name,
                    "command": p.command,
                    "pid": p.pid,
                    "uptimeMs": p.uptime_ms,
                }
                for p in processes.list()
            ]
        )

    @registry.tool(name="getProcessOutput", category=ToolCategory.PROCESS)
    def get_process_output(name: str, lines: int = DEFAULT_OUTPUT_LINES) -> ProcessResult | ErrorResult:
        """
        Get the most recent output of a background process.

        Args:
            name: Name given to startProcess
            lines: Number of trailing lines per stream
        """
        output = processes.get_output(name, lines)
        if output is None:
            return ErrorResult(error=f"No process named '{name}'")
        return ProcessResult(
            name=name,
            running=processes.is_running(name),
            detail=json.dumps(output),
        )
