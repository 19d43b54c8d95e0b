"""
Utility tools: completion signal and scratch-pad reasoning.
"""

from __future__ import annotations

import logging

from agentloop.runner.tool_registry import DONE_TOOL, ToolRegistry
from agentloop.runner.tool_results import OpaqueResult, SignalResult, ToolCategory

logger = logging.getLogger(__name__)


def register_tools(registry: ToolRegistry) -> None:
    """Register the done and think tools."""

    @registry.tool(name=DONE_TOOL, category=ToolCategory.SIGNAL)
    def done(summary: str) -> SignalResult:
        """
        Signal that the task is complete.

        Call this only once the task is finished and verified. The loop stops
        after the current iteration.

        Args:
            summary: Short description of what was accomplished
        """
        logger.info("Agent signalled completion")
        return SignalResult(signal=DONE_TOOL, summary_text=summary)

    @registry.tool(name="think")
    def think(thought: str) -> OpaqueResult:
        """
        Write down reasoning or a plan without touching the workspace.

        Args:
            thought: The reasoning to record
        """
        return OpaqueResult(value="Thought recorded.")
