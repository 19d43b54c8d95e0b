"""Tagged tool outcome types.

Every executor result is normalised into one of these before the loop
looks at it, so modified-file tracking and error detection match on the
result type instead of probing opaque dicts for ``path`` or ``stderr``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ToolCategory(StrEnum):
    WRITE = "write"
    READ = "read"
    EXEC = "exec"
    BROWSER = "browser"
    PROCESS = "process"
    SIGNAL = "signal"
    OTHER = "other"


def _json(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


@dataclass(frozen=True)
class WriteResult:
    """A file was created or overwritten."""

    path: str
    bytes_written: int = 0
    category = ToolCategory.WRITE

    def error_signal(self) -> str | None:
        return None

    def to_content(self) -> str:
        return f"Wrote {self.bytes_written} bytes to {self.path}"

    def summary(self) -> str:
        return f"write {self.path} ({self.bytes_written} bytes)"


@dataclass(frozen=True)
class ReadResult:
    path: str
    content: str
    category = ToolCategory.READ

    def error_signal(self) -> str | None:
        return None

    def to_content(self) -> str:
        return self.content

    def summary(self) -> str:
        return f"read {self.path} ({len(self.content)} chars, {self.content.count(chr(10)) + 1} lines)"


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a shell command."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    category = ToolCategory.EXEC

    def error_signal(self) -> str | None:
        if self.stderr:
            return self.stderr
        if self.exit_code != 0:
            return f"exit code {self.exit_code}"
        return None

    def to_content(self) -> str:
        return _json({"stdout": self.stdout, "stderr": self.stderr, "exitCode": self.exit_code})

    def summary(self) -> str:
        return f"bash (exit {self.exit_code}, {len(self.stdout) + len(self.stderr)} chars)"


@dataclass(frozen=True)
class BrowserResult:
    """A navigation, screenshot or page interaction."""

    url: str | None = None
    action: str = "navigate"  # navigate | screenshot | interact
    title: str = ""
    category = ToolCategory.BROWSER

    def error_signal(self) -> str | None:
        return None

    def to_content(self) -> str:
        return _json({"url": self.url, "action": self.action, "title": self.title})

    def summary(self) -> str:
        return f"browser {self.action} {self.url or ''}".rstrip()


@dataclass(frozen=True)
class ProcessResult:
    """A managed-process operation (start/stop/list/output)."""

    name: str
    pid: int | None = None
    running: bool = False
    detail: str = ""
    category = ToolCategory.PROCESS

    def error_signal(self) -> str | None:
        return None

    def to_content(self) -> str:
        payload: dict[str, Any] = {"name": self.name, "pid": self.pid, "running": self.running}
        if self.detail:
            payload["detail"] = self.detail
        return _json(payload)

    def summary(self) -> str:
        state = "running" if self.running else "stopped"
        return f"process {self.name} ({state}, {len(self.detail)} chars)"


@dataclass(frozen=True)
class SignalResult:
    """A control signal such as ``done``."""

    signal: str
    summary_text: str = ""
    category = ToolCategory.SIGNAL

    def error_signal(self) -> str | None:
        return None

    def to_content(self) -> str:
        return f"Signal '{self.signal}' acknowledged." + (f" {self.summary_text}" if self.summary_text else "")

    def summary(self) -> str:
        return f"{self.signal}: {self.summary_text[:100]}"


@dataclass(frozen=True)
class ErrorResult:
    error: str
    category = ToolCategory.OTHER

    def error_signal(self) -> str | None:
        return self.error

    def to_content(self) -> str:
        return f"Error: {self.error}"

    def summary(self) -> str:
        return f"error: {self.error[:200]}"


@dataclass(frozen=True)
class OpaqueResult:
    """Anything an executor returned that has no dedicated shape."""

    value: Any = None
    category = ToolCategory.OTHER

    def error_signal(self) -> str | None:
        return None

    def to_content(self) -> str:
        if isinstance(self.value, str):
            return self.value
        return _json(self.value)

    def summary(self) -> str:
        if isinstance(self.value, str):
            return f"string ({len(self.value)} chars, {self.value.count(chr(10)) + 1} lines)"
        if self.value is None:
            return "null"
        if isinstance(self.value, dict):
            keys = list(self.value)
            more = "..." if len(keys) > 5 else ""
            return f"object {{{', '.join(keys[:5])}{more}}}"
        return type(self.value).__name__


ToolOutcome = (
    WriteResult
    | ReadResult
    | ExecResult
    | BrowserResult
    | ProcessResult
    | SignalResult
    | ErrorResult
    | OpaqueResult
)

_OUTCOME_TYPES = (
    WriteResult,
    ReadResult,
    ExecResult,
    BrowserResult,
    ProcessResult,
    SignalResult,
    ErrorResult,
    OpaqueResult,
)


def is_outcome(value: Any) -> bool:
    return isinstance(value, _OUTCOME_TYPES)


def _from_dict(value: dict, category: ToolCategory) -> ToolOutcome | None:
    """Shape a plain dict by the category its tool was registered with."""
    if category == ToolCategory.EXEC and {"stdout", "stderr", "exitCode", "exit_code"} & value.keys():
        code = value.get("exitCode", value.get("exit_code", 0))
        return ExecResult(
            stdout=str(value.get("stdout") or ""),
            stderr=str(value.get("stderr") or ""),
            exit_code=code if isinstance(code, int) else 1,
        )
    if category == ToolCategory.WRITE and isinstance(value.get("path"), str):
        written = value.get("bytesWritten", value.get("bytes_written", 0))
        return WriteResult(path=value["path"], bytes_written=written if isinstance(written, int) else 0)
    if category == ToolCategory.BROWSER and "url" in value:
        return BrowserResult(
            url=value["url"],
            action=str(value.get("action") or "navigate"),
            title=str(value.get("title") or ""),
        )
    return None


def to_outcome(value: Any, category: ToolCategory = ToolCategory.OTHER) -> ToolOutcome:
    """Wrap a raw executor return value; tagged outcomes pass through.

    Plain dicts from EXEC, WRITE and BROWSER tools are reshaped into
    ExecResult, WriteResult and BrowserResult when they carry the matching
    keys (``stdout``/``stderr``/``exitCode``, ``path``, ``url``).
    """
    if is_outcome(value):
        return value
    if isinstance(value, dict):
        shaped = _from_dict(value, category)
        if shaped is not None:
            return shaped
    return OpaqueResult(value=value)
