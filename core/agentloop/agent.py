"""
LoopAgent - one autonomous coding run, wired end to end.

Builds the system prompt, tool registry, process registry and optional trace
recorder, then hands a fresh LoopState to the LoopController. Managed
processes are always stopped when the run ends, however it ends.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from agentloop.config import RuntimeConfig, get_budget_overrides, normalize_trace_config
from agentloop.llm.litellm import LiteLLMProvider
from agentloop.llm.provider import LLMProvider
from agentloop.loop.completion import completion_from_config
from agentloop.loop.controller import (
    ErrorObserver,
    LoopConfig,
    LoopController,
    StatusObserver,
    StuckPolicy,
    call_hook,
    make_status,
)
from agentloop.loop.prompt import ContextFile, build_system_prompt
from agentloop.loop.state import IterationRecord, LoopResult, LoopState, LoopStatus
from agentloop.observability import clear_trace_context
from agentloop.runner.tool_registry import ToolRegistry
from agentloop.runtime.budget import Budget
from agentloop.runtime.event_recorder import EventRecorder
from agentloop.runtime.process_registry import ProcessRegistry
from agentloop.tools import create_default_tools

logger = logging.getLogger(__name__)


class LoopAgent:
    """
    Runs a task to completion (or until a limit) with an LLM and tools.

    Example:
        agent = LoopAgent(
            task="Add a /health endpoint and make the tests pass",
            rules=["Run pytest before calling done"],
            limits={"maxIterations": 30, "maxCost": 5.0, "timeout": "1h"},
            completion={"type": "command", "command": "pytest -q"},
            tools=my_shell_tools,
        )
        result = await agent.run()

    ``limits`` are layered over the "limits" section of
    ~/.agentloop/configuration.json. ``tools`` override the defaults by name;
    pass ``default_tools=False`` to offer only your own. ``trace`` accepts
    anything ``normalize_trace_config`` does; None defers to AGENTLOOP_TRACE.
    """

    def __init__(
        self,
        task: str,
        rules: list[str] | None = None,
        context: str | list[ContextFile] | None = None,
        system_prompt: str | None = None,
        llm: LLMProvider | None = None,
        limits: Mapping[str, Any] | None = None,
        completion: Any = None,
        stuck_detection: bool | Mapping[str, Any] = True,
        tools: ToolRegistry | None = None,
        default_tools: bool = True,
        workdir: str | Path = ".",
        trace: Any = None,
        on_update: StatusObserver | None = None,
        on_stuck: StuckPolicy | None = None,
        on_complete: Callable[[LoopResult], Any] | None = None,
        on_error: ErrorObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.task = task
        self.rules = rules or []
        self.workdir = Path(workdir)
        self.llm = llm or LiteLLMProvider.from_runtime_config(RuntimeConfig())
        self.budget = Budget.from_overrides({**get_budget_overrides(), **(limits or {})})
        self.system_prompt = build_system_prompt(task, self.rules, context, system_prompt)
        self.on_complete = on_complete
        self._clock = clock

        trace_options = normalize_trace_config(trace)
        self.recorder = (
            EventRecorder(trace_options.resolve_path(), trace_options.include_tool_results)
            if trace_options
            else None
        )

        self.processes = ProcessRegistry()
        if default_tools:
            self.tools = create_default_tools(self.processes, self.workdir, self.recorder)
            if tools is not None:
                self.tools.merge(tools)
        else:
            self.tools = tools or ToolRegistry()
            self.tools.recorder = self.recorder

        if isinstance(stuck_detection, Mapping):
            stuck, stuck_enabled = stuck_detection, bool(stuck_detection.get("enabled", True))
        else:
            stuck, stuck_enabled = {}, bool(stuck_detection)
        self.config = LoopConfig(
            budget=self.budget,
            completion=completion_from_config(completion),
            stuck_detection=stuck_enabled,
            stuck_threshold=stuck.get("threshold", 5),
            stuck_window=stuck.get("window_size", stuck.get("windowSize", 8)),
        )
        self.controller = LoopController(
            llm=self.llm,
            tools=self.tools,
            config=self.config,
            recorder=self.recorder,
            on_update=on_update,
            on_stuck=on_stuck,
            on_error=on_error,
            clock=clock,
        )
        self.state = LoopState.new(clock)

    @property
    def trace_path(self) -> Path | None:
        return self.recorder.path if self.recorder else None

    async def run(self) -> LoopResult:
        """Run the loop once. Raises only on errors outside an iteration."""
        self.state.started_at = self._clock()
        logger.info("Starting agent run %s", self.state.id)
        if self.recorder:
            self.recorder.record_agent_start(
                runId=self.state.id,
                task=self.task[:2000],
                model=getattr(self.llm, "model", type(self.llm).__name__),
                tools=self.tools.get_registered_names(),
            )
            self.recorder.record_agent_config(
                limits=self.budget.to_dict(),
                completion=getattr(self.config.completion, "kind", None),
                stuckDetection=self.config.stuck_detection,
                stuckThreshold=self.config.stuck_threshold,
                rules=self.rules,
                workdir=str(self.workdir),
            )
            self.recorder.record_system_prompt(self.system_prompt)

        try:
            result = await self.controller.run(self.state, self.system_prompt)
        except Exception as e:
            logger.exception("Agent run %s failed", self.state.id)
            if self.recorder:
                self.recorder.record_agent_error(e)
            raise
        finally:
            await self.processes.stop_all()
            clear_trace_context()

        if self.on_complete is not None:
            try:
                await call_hook(self.on_complete, result)
            except Exception:
                logger.exception("on_complete callback failed (non-fatal)")
        return result

    def stop(self) -> None:
        """Ask the loop to stop at the next iteration boundary."""
        self.state.should_stop = True

    def nudge(self, message: str) -> None:
        """Queue guidance for the next iteration's user message."""
        self.state.pending_nudge = message

    def get_status(self) -> LoopStatus:
        return make_status(self.state, int((self._clock() - self.state.started_at) * 1000))

    def get_history(self) -> list[IterationRecord]:
        return list(self.state.iterations)
