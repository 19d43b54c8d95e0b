"""Run state for the agent loop.

``LoopState`` is owned by a single run and passed explicitly into the
controller; nothing here is module-level, so concurrent runs and tests
never share counters.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from agentloop.runner.tool_results import ToolCategory, ToolOutcome, to_outcome


class LoopStatusState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STUCK = "stuck"
    COMPLETING = "completing"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"


class LoopEndReason(StrEnum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    MAX_COST = "max_cost"
    TIMEOUT = "timeout"
    STOPPED = "stopped"
    ERROR = "error"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_run_id() -> str:
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"{ts}_{uuid.uuid4().hex[:8]}"


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input += max(0, input_tokens)
        self.output += max(0, output_tokens)

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "total": self.total}


@dataclass
class ToolInvocationRecord:
    """One tool call made during an iteration."""

    name: str
    args: dict[str, Any]
    result: ToolOutcome
    duration_ms: int = 0
    timestamp: str = field(default_factory=_now_iso)
    tool_use_id: str = ""
    category: ToolCategory | None = None

    def __post_init__(self) -> None:
        self.result = to_outcome(self.result)
        if self.category is None:
            self.category = self.result.category


@dataclass
class IterationRecord:
    index: int
    timestamp: str = field(default_factory=_now_iso)
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    tool_calls: list[ToolInvocationRecord] = field(default_factory=list)
    files_modified: list[str] | None = None
    response_text: str | None = None
    nudge: str | None = None
    error: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LoopState:
    """Mutable record of one run. Counters only ever grow."""

    id: str = field(default_factory=new_run_id)
    status: LoopStatusState = LoopStatusState.IDLE
    iteration: int = 0
    cost: float = 0.0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    started_at: float = field(default_factory=time.monotonic)
    started_at_iso: str = field(default_factory=_now_iso)
    iterations: list[IterationRecord] = field(default_factory=list)
    files_modified: set[str] = field(default_factory=set)
    summary: str = ""
    pending_nudge: str | None = None
    should_stop: bool = False

    @classmethod
    def new(cls, clock: Any = time.monotonic, run_id: str | None = None) -> LoopState:
        return cls(id=run_id or new_run_id(), started_at=clock())

    def append_iteration(self, record: IterationRecord) -> None:
        self.iterations.append(record)
        if record.files_modified:
            self.files_modified.update(record.files_modified)

    def add_cost(self, delta: float) -> None:
        if delta > 0:
            self.cost += delta


@dataclass
class LoopStatus:
    """Snapshot handed to observers after every iteration."""

    id: str
    status: LoopStatusState
    iteration: int
    cost: float
    tokens: dict[str, int]
    elapsed_ms: int
    last_actions: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)


@dataclass
class LoopError:
    code: str
    message: str
    cause: BaseException | None = None


@dataclass
class LoopResult:
    success: bool
    reason: LoopEndReason
    iterations: int
    cost: float
    tokens: dict[str, int]
    elapsed_ms: int
    summary: str = ""
    error: LoopError | None = None
