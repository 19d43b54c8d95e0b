"""Completion strategies: how the loop decides a task is finished.

The explicit ``done`` tool always ends the run; a strategy adds a second,
external test evaluated after each successful iteration.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from agentloop.errors import CompletionCheckError
from agentloop.loop.state import IterationRecord, LoopState

logger = logging.getLogger(__name__)

FILE_SUMMARY_CHARS = 500


@dataclass
class CompletionContext:
    """Read-only view of the run handed to completion checks."""

    iteration: int
    cost: float
    tokens: dict[str, int]
    recent_iterations: list[IterationRecord] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)

    @classmethod
    def from_state(cls, state: LoopState) -> CompletionContext:
        return cls(
            iteration=state.iteration,
            cost=state.cost,
            tokens=state.tokens.to_dict(),
            recent_iterations=list(state.iterations[-5:]),
            files_modified=sorted(state.files_modified),
        )


@dataclass
class CompletionResult:
    complete: bool
    summary: str | None = None


@runtime_checkable
class CompletionStrategy(Protocol):
    kind: str

    async def check(self, ctx: CompletionContext) -> CompletionResult: ...


class ToolSignalCompletion:
    """Relies solely on the ``done`` tool; never completes on its own."""

    kind = "tool"

    async def check(self, ctx: CompletionContext) -> CompletionResult:
        return CompletionResult(complete=False)


class FileExistsCompletion:
    """Complete once a sentinel file exists; its head becomes the summary."""

    kind = "file"

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def check(self, ctx: CompletionContext) -> CompletionResult:
        if not self.path.is_file():
            return CompletionResult(complete=False)
        try:
            content = self.path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("Completion file %s exists but is unreadable: %s", self.path, e)
            return CompletionResult(complete=False)
        return CompletionResult(complete=True, summary=content[:FILE_SUMMARY_CHARS])


class CommandCompletion:
    """Complete when a shell command exits 0."""

    kind = "command"

    def __init__(self, command: str, cwd: str | Path | None = None, timeout: float | None = 300.0):
        self.command = command
        self.cwd = str(cwd) if cwd is not None else None
        self.timeout = timeout

    async def check(self, ctx: CompletionContext) -> CompletionResult:
        try:
            proc = await asyncio.create_subprocess_shell(
                self.command,
                cwd=self.cwd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Completion command failed to start: %s", e)
            return CompletionResult(complete=False)

        try:
            returncode = await asyncio.wait_for(proc.wait(), timeout=self.timeout)
        except TimeoutError:
            logger.warning("Completion command timed out after %ss: %s", self.timeout, self.command)
            proc.kill()
            await proc.wait()
            return CompletionResult(complete=False)

        if returncode != 0:
            return CompletionResult(complete=False)
        return CompletionResult(complete=True, summary=f'Command "{self.command}" succeeded')


CompletionPredicate = Callable[
    [CompletionContext], CompletionResult | bool | Awaitable[CompletionResult | bool]
]


class CustomCompletion:
    """Arbitrary predicate, sync or async, returning a CompletionResult or bool.

    A predicate that raises is wrapped in CompletionCheckError; the loop
    treats that as "not complete".
    """

    kind = "custom"

    def __init__(self, check: CompletionPredicate):
        self._check = check

    async def check(self, ctx: CompletionContext) -> CompletionResult:
        try:
            result = self._check(ctx)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise CompletionCheckError(f"Custom completion check failed: {e}") from e

        if isinstance(result, bool):
            return CompletionResult(complete=result)
        if isinstance(result, CompletionResult):
            return result
        if isinstance(result, dict):
            return CompletionResult(complete=bool(result.get("complete")), summary=result.get("summary"))
        raise CompletionCheckError(f"Custom completion check returned {type(result).__name__}")


def completion_from_config(config: Any) -> CompletionStrategy:
    """Build a strategy from ``{"type": "tool"|"file"|"command"|"custom", ...}``.

    Strategy instances pass through; None means the tool signal.
    """
    if config is None:
        return ToolSignalCompletion()
    if isinstance(config, CompletionStrategy):
        return config
    if not isinstance(config, dict):
        raise TypeError(f"Unsupported completion config: {config!r}")

    kind = config.get("type", "tool")
    if kind == "tool":
        return ToolSignalCompletion()
    if kind == "file":
        if not config.get("file"):
            raise ValueError("file completion requires 'file'")
        return FileExistsCompletion(config["file"])
    if kind == "command":
        if not config.get("command"):
            raise ValueError("command completion requires 'command'")
        return CommandCompletion(config["command"], cwd=config.get("cwd"), timeout=config.get("timeout", 300.0))
    if kind == "custom":
        if not callable(config.get("check")):
            raise ValueError("custom completion requires a callable 'check'")
        return CustomCompletion(config["check"])
    raise ValueError(f"Unknown completion type: {kind!r}")
