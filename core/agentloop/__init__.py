"""
agentloop - a budgeted, self-monitoring control loop for autonomous coding agents.

The model is called repeatedly with a tool set until it signals completion,
a completion check passes, or a budget limit (iterations, cost, wall-clock
time) is hit. Stuck behavior is detected and answered with nudges, the
context is compacted as it grows, long-running processes are managed, and
every step can be traced to an NDJSON file.
"""

from agentloop.agent import LoopAgent
from agentloop.errors import AgentLoopError, CompletionCheckError, ModelInvocationError, ProcessSpawnError
from agentloop.llm import LiteLLMProvider, LLMProvider, LLMResponse, MockLLMProvider, MockScript, Tool
from agentloop.loop.completion import (
    CommandCompletion,
    CompletionResult,
    CustomCompletion,
    FileExistsCompletion,
    ToolSignalCompletion,
)
from agentloop.loop.controller import LoopConfig, LoopController
from agentloop.loop.conversation import ContextCompactor
from agentloop.loop.prompt import ContextFile
from agentloop.loop.state import (
    IterationRecord,
    LoopEndReason,
    LoopError,
    LoopResult,
    LoopState,
    LoopStatus,
    LoopStatusState,
)
from agentloop.loop.stuck import StuckAnalyzer, StuckReason, StuckVerdict
from agentloop.runner.tool_registry import ToolRegistry
from agentloop.runtime.budget import Budget, BudgetTracker, parse_duration
from agentloop.runtime.event_recorder import EventRecorder, read_trace
from agentloop.runtime.process_registry import ProcessRegistry

__all__ = [
    # Facade
    "LoopAgent",
    # Loop
    "LoopConfig",
    "LoopController",
    "LoopState",
    "LoopStatus",
    "LoopStatusState",
    "LoopEndReason",
    "LoopResult",
    "LoopError",
    "IterationRecord",
    "ContextFile",
    # Budget, context, stuck detection
    "Budget",
    "BudgetTracker",
    "parse_duration",
    "ContextCompactor",
    "StuckAnalyzer",
    "StuckReason",
    "StuckVerdict",
    # Completion
    "CompletionResult",
    "ToolSignalCompletion",
    "FileExistsCompletion",
    "CommandCompletion",
    "CustomCompletion",
    # Tools and resources
    "ToolRegistry",
    "ProcessRegistry",
    "EventRecorder",
    "read_trace",
    # LLM
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "MockLLMProvider",
    "MockScript",
    "Tool",
    # Errors
    "AgentLoopError",
    "ModelInvocationError",
    "ProcessSpawnError",
    "CompletionCheckError",
]
