"""EventRecorder: append-only NDJSON trace of one agent run.

Every ``record_*`` call writes one complete JSON line immediately (JSONL
append under a lock, no buffering beyond the OS). A run that dies halfway
still leaves a valid prefix of events, and ``tail -f`` works while the run
is in progress.

Usage::

    recorder = EventRecorder(Path(".traces/trace-run1.ndjson"))
    controller = LoopController(llm, tools, recorder=recorder)

Safety: a failed write is logged and counted, never raised. Tracing must
not kill a run.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import traceback
from collections import Counter
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from agentloop.loop.state import LoopResult, LoopState
from agentloop.runner.tool_results import ToolOutcome

logger = logging.getLogger(__name__)

BASE64_MIN_CHARS = 1000
MAX_STRING_CHARS = 5000
PREVIEW_CHARS = 500
SYSTEM_PROMPT_MAX_CHARS = 10_000
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_IMAGE_KEYS = frozenset({"screenshot", "image"})


class TraceEventType(StrEnum):
    AGENT_START = "agent_start"
    AGENT_CONFIG = "agent_config"
    SYSTEM_PROMPT = "system_prompt"
    ITERATION_START = "iteration_start"
    ITERATION_END = "iteration_end"
    ITERATION_ERROR = "iteration_error"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"
    MODEL_RESPONSE = "model_response"
    MESSAGE = "message"
    STUCK_DETECTED = "stuck_detected"
    NUDGE_INJECTED = "nudge_injected"
    CONTEXT_SUMMARIZED = "context_summarized"
    CONTEXT_ANALYSIS = "context_analysis"
    BUDGET_WARNING = "budget_warning"
    COMPLETION_CHECK_FAILED = "completion_check_failed"
    AGENT_COMPLETE = "agent_complete"
    AGENT_ERROR = "agent_error"
    SUMMARY = "summary"


class TraceEvent(BaseModel):
    """One line of the trace. Event-specific payload rides in extra fields."""

    model_config = ConfigDict(extra="allow")

    ts: str
    type: TraceEventType
    iter: int | None = None

    def to_line(self) -> str:
        data = self.model_dump(mode="json")
        if data.get("iter") is None:
            data.pop("iter", None)
        return json.dumps(data, ensure_ascii=False, default=str) + "\n"


def sanitize_for_trace(value: Any, key: str | None = None) -> Any:
    """Strip bulky payloads (images, base64, huge strings) before tracing."""
    if key in _IMAGE_KEYS:
        return "[image data omitted]"
    if isinstance(value, str):
        if key == "data" and len(value) > BASE64_MIN_CHARS:
            return f"[binary data, {len(value)} chars]"
        if len(value) > BASE64_MIN_CHARS and _BASE64_RE.match(value[:100]):
            return f"[base64 data, {len(value)} chars]"
        if len(value) > MAX_STRING_CHARS:
            return value[:MAX_STRING_CHARS] + f"\n... [truncated, {len(value)} total chars]"
        return value
    if isinstance(value, dict):
        return {k: sanitize_for_trace(v, k) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [sanitize_for_trace(v) for v in value]
    return value


def _short_stack(error: BaseException, lines: int = 5) -> str:
    formatted = "".join(traceback.format_exception(error)).strip().splitlines()
    return "\n".join(formatted[-lines:])


class EventRecorder:
    """Writes trace events for a run.

    Thread-safe: a lock serializes appends so tool executors running in
    worker threads cannot interleave partial lines.
    """

    def __init__(self, path: str | Path, include_tool_results: bool = False) -> None:
        self.path = Path(path)
        self.include_tool_results = include_tool_results
        self.tool_call_counts: Counter[str] = Counter()
        self.errors_encountered = 0
        self.stuck_count = 0
        self.write_failures = 0
        self.events_written = 0
        self._lock = threading.Lock()
        self._initialized = False

    # -------------------------------------------------------------------
    # Low-level append
    # -------------------------------------------------------------------

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)
        self._initialized = True

    def emit(self, event_type: TraceEventType, iteration: int | None = None, **payload: Any) -> None:
        """Append one event. Write failures are logged (non-fatal)."""
        event = TraceEvent(
            ts=datetime.now(UTC).isoformat(),
            type=event_type,
            iter=iteration,
            **payload,
        )
        line = event.to_line()
        with self._lock:
            try:
                self._ensure_initialized()
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                self.events_written += 1
            except OSError as e:
                self.write_failures += 1
                logger.warning("Failed to write trace event %s to %s (non-fatal): %s", event_type, self.path, e)

    # -------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------

    def record_agent_start(self, **data: Any) -> None:
        self.emit(TraceEventType.AGENT_START, **sanitize_for_trace(data))

    def record_agent_config(self, **config: Any) -> None:
        self.emit(TraceEventType.AGENT_CONFIG, **sanitize_for_trace(config))

    def record_system_prompt(self, prompt: str) -> None:
        text = prompt
        if len(text) > SYSTEM_PROMPT_MAX_CHARS:
            text = text[:SYSTEM_PROMPT_MAX_CHARS] + "\n... [truncated]"
        self.emit(TraceEventType.SYSTEM_PROMPT, prompt=text, length=len(prompt))

    def record_agent_complete(self, result: LoopResult, state: LoopState) -> None:
        """Write the completion event followed by the run summary."""
        self.emit(
            TraceEventType.AGENT_COMPLETE,
            success=result.success,
            reason=str(result.reason),
            summary=result.summary,
            error=result.error.message if result.error else None,
        )
        self.emit(
            TraceEventType.SUMMARY,
            totalIterations=result.iterations,
            totalToolCalls=sum(len(r.tool_calls) for r in state.iterations),
            totalTokens=result.tokens,
            totalCost=result.cost,
            elapsedMs=result.elapsed_ms,
            result=str(result.reason),
            toolCallCounts=dict(self.tool_call_counts),
            filesModified=sorted(state.files_modified),
            errorsEncountered=self.errors_encountered,
            stuckCount=self.stuck_count,
        )

    def record_agent_error(self, error: BaseException) -> None:
        self.emit(TraceEventType.AGENT_ERROR, error=str(error), stack=_short_stack(error, 20))

    # -------------------------------------------------------------------
    # Iterations
    # -------------------------------------------------------------------

    def record_iteration_start(self, iteration: int, cost: float, tokens: dict[str, int]) -> None:
        self.emit(TraceEventType.ITERATION_START, iteration, cost=cost, tokens=tokens)

    def record_iteration_end(
        self,
        iteration: int,
        duration_ms: int,
        tokens: dict[str, int],
        cost: float,
        tool_call_count: int,
    ) -> None:
        self.emit(
            TraceEventType.ITERATION_END,
            iteration,
            durationMs=duration_ms,
            tokens=tokens,
            cost=cost,
            toolCallCount=tool_call_count,
        )

    def record_iteration_error(self, iteration: int, error: BaseException, code: str) -> None:
        self.errors_encountered += 1
        self.emit(
            TraceEventType.ITERATION_ERROR,
            iteration,
            code=code,
            error=str(error),
            errorType=type(error).__name__,
            stack=_short_stack(error),
        )

    def record_model_response(
        self,
        iteration: int,
        text: str,
        tool_names: list[str],
        tokens: dict[str, int],
    ) -> None:
        self.emit(
            TraceEventType.MODEL_RESPONSE,
            iteration,
            hasText=bool(text),
            textLength=len(text),
            textPreview=text[:PREVIEW_CHARS],
            toolCallCount=len(tool_names),
            toolNames=tool_names,
            tokens=tokens,
        )

    def record_message(self, role: str, content: str, iteration: int | None = None) -> None:
        self.emit(
            TraceEventType.MESSAGE,
            iteration,
            role=role,
            contentLength=len(content),
            contentPreview=content[:PREVIEW_CHARS],
        )

    # -------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------

    def record_tool_call(self, iteration: int | None, tool: str, args: dict[str, Any]) -> None:
        self.tool_call_counts[tool] += 1
        self.emit(TraceEventType.TOOL_CALL, iteration, tool=tool, args=sanitize_for_trace(args))

    def record_tool_result(
        self,
        iteration: int | None,
        tool: str,
        outcome: ToolOutcome,
        duration_ms: int,
    ) -> None:
        payload: dict[str, Any] = {
            "tool": tool,
            "durationMs": duration_ms,
            "success": outcome.error_signal() is None,
            "category": str(outcome.category),
        }
        if self.include_tool_results:
            payload["result"] = sanitize_for_trace(outcome.to_content())
        else:
            payload["resultSummary"] = outcome.summary()
        self.emit(TraceEventType.TOOL_RESULT, iteration, **payload)

    def record_tool_error(
        self,
        iteration: int | None,
        tool: str,
        error: BaseException | str,
        duration_ms: int,
    ) -> None:
        self.errors_encountered += 1
        stack = _short_stack(error) if isinstance(error, BaseException) else None
        self.emit(
            TraceEventType.TOOL_ERROR,
            iteration,
            tool=tool,
            durationMs=duration_ms,
            error=str(error),
            stack=stack,
        )

    # -------------------------------------------------------------------
    # Loop control
    # -------------------------------------------------------------------

    def record_stuck(self, iteration: int, reason: str, details: str) -> None:
        self.stuck_count += 1
        self.emit(TraceEventType.STUCK_DETECTED, iteration, reason=reason, details=details)

    def record_nudge(self, iteration: int, nudge: str) -> None:
        self.emit(TraceEventType.NUDGE_INJECTED, iteration, nudge=nudge[:1000], nudgeLength=len(nudge))

    def record_context_summarized(
        self,
        iteration: int,
        original_tokens: int,
        new_tokens: int,
        strategy: str,
    ) -> None:
        reduction = original_tokens - new_tokens
        percent = round(reduction / original_tokens * 100) if original_tokens else 0
        self.emit(
            TraceEventType.CONTEXT_SUMMARIZED,
            iteration,
            originalTokens=original_tokens,
            newTokens=new_tokens,
            reduction=reduction,
            reductionPercent=percent,
            strategy=strategy,
        )

    def record_context_analysis(
        self,
        iteration: int,
        system_prompt_tokens: int,
        message_count: int,
        total_message_tokens: int,
        largest_messages: list[dict[str, Any]],
    ) -> None:
        self.emit(
            TraceEventType.CONTEXT_ANALYSIS,
            iteration,
            systemPromptTokens=system_prompt_tokens,
            messageCount=message_count,
            totalMessageTokens=total_message_tokens,
            largestMessages=largest_messages,
        )

    def record_budget_warning(self, iteration: int, tokens: int, limit: int) -> None:
        self.emit(TraceEventType.BUDGET_WARNING, iteration, tokens=tokens, limit=limit)

    def record_completion_check_failed(self, iteration: int, strategy: str, error: BaseException) -> None:
        self.errors_encountered += 1
        self.emit(TraceEventType.COMPLETION_CHECK_FAILED, iteration, strategy=strategy, error=str(error))


# -------------------------------------------------------------------
# Reading traces back
# -------------------------------------------------------------------


def read_trace(path: str | Path) -> list[TraceEvent]:
    """Parse a trace file into events.

    Skips blank lines and corrupt JSON lines (partial writes from crashes).
    """
    path = Path(path)
    events: list[TraceEvent] = []
    if not path.exists():
        return events
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(TraceEvent(**json.loads(line)))
                except (json.JSONDecodeError, ValueError, TypeError) as e:
                    logger.warning("Skipping corrupt trace line in %s: %s", path, e)
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
    return events
