"""Stuck detection over structured iteration history.

Purely syntactic: the analyzer looks at tool names, arguments, error
strings, token counts and file writes. It never judges whether the agent is
"really" making progress, and its verdicts are advisory.

Checks run in a fixed order and the first hit wins:
repetitive → browser_loop → error_loop → oscillation → no_progress.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum

from agentloop.loop.state import IterationRecord, ToolInvocationRecord
from agentloop.runner.tool_results import BrowserResult, ToolCategory

BROWSER_TOOLS = frozenset({"openBrowser", "screenshot", "navigate"})
# Browser tools that count toward the "screenshot flood" check
SCREENSHOT_TOOLS = frozenset({"openBrowser", "screenshot"})
# Tools that do not count as "other work" while the agent is looking at pages
PASSIVE_TOOLS = BROWSER_TOOLS | {"getProcessOutput"}

NO_PROGRESS_MIN_ITERATIONS = 5
NO_PROGRESS_TOKEN_LIMIT = 150_000
NO_PROGRESS_MIN_DISTINCT_TOOLS = 3
URL_REVISIT_LIMIT = 2
SCREENSHOT_FLOOD_LIMIT = 6
SCREENSHOT_FLOOD_OTHER_MIN = 3
ERROR_PREFIX_CHARS = 100


class StuckReason(StrEnum):
    REPETITIVE = "repetitive"
    BROWSER_LOOP = "browser_loop"
    ERROR_LOOP = "error_loop"
    OSCILLATION = "oscillation"
    NO_PROGRESS = "no_progress"


@dataclass
class StuckVerdict:
    reason: StuckReason
    details: str
    recent_iterations: list[IterationRecord] = field(default_factory=list)
    repeated_error: str | None = None


def call_signature(call: ToolInvocationRecord) -> str:
    return f"{call.name}:{json.dumps(call.args, sort_keys=True, default=str)}"


def iteration_signature(record: IterationRecord) -> str:
    return "|".join(call_signature(tc) for tc in record.tool_calls)


def _is_browser_call(call: ToolInvocationRecord) -> bool:
    return call.name in BROWSER_TOOLS or call.category == ToolCategory.BROWSER


def _browser_url(call: ToolInvocationRecord) -> str | None:
    if isinstance(call.result, BrowserResult) and call.result.url:
        return call.result.url
    url = call.args.get("url")
    return url if isinstance(url, str) and url else None


def _files_changed(window: list[IterationRecord]) -> int:
    return sum(len(r.files_modified or []) for r in window)


class StuckAnalyzer:
    """Pure check over the most recent iterations.

    Identical histories always yield identical verdicts; the analyzer keeps
    no state between calls.
    """

    def __init__(self, threshold: int = 5, window_size: int = 8):
        if threshold < 1 or window_size < 1:
            raise ValueError("threshold and window_size must be >= 1")
        self.threshold = threshold
        self.window_size = window_size

    def check(self, iterations: list[IterationRecord]) -> StuckVerdict | None:
        if len(iterations) < self.threshold:
            return None

        window = list(iterations[-self.window_size :])
        return (
            self._check_repetitive(window)
            or self._check_browser_loop(window)
            or self._check_error_loop(window)
            or self._check_oscillation(window)
            or self._check_no_progress(window)
        )

    # -------------------------------------------------------------------
    # Individual checks, in priority order
    # -------------------------------------------------------------------

    def _check_repetitive(self, window: list[IterationRecord]) -> StuckVerdict | None:
        if len(window) < self.threshold:
            return None
        tail = window[-self.threshold :]
        signatures = [iteration_signature(r) for r in tail]
        first = signatures[0]
        if first and all(sig == first for sig in signatures):
            return StuckVerdict(
                reason=StuckReason.REPETITIVE,
                details=f"Same tool calls repeated {self.threshold} times: {first[:100]}...",
                recent_iterations=tail,
            )
        return None

    def _check_browser_loop(self, window: list[IterationRecord]) -> StuckVerdict | None:
        if len(window) < 3:
            return None

        browser_calls = [tc for r in window for tc in r.tool_calls if _is_browser_call(tc)]
        visits = Counter(url for url in map(_browser_url, browser_calls) if url)
        repeated = [(url, n) for url, n in visits.items() if n > URL_REVISIT_LIMIT]

        if repeated and _files_changed(window) == 0:
            listing = ", ".join(f"{url}: {n}x" for url, n in repeated)
            return StuckVerdict(
                reason=StuckReason.BROWSER_LOOP,
                details=(
                    f"Visiting same URLs repeatedly ({listing}) with {len(browser_calls)} "
                    "browser calls but no file changes. The work may already be complete; "
                    "record verification results and call done() if it is."
                ),
                recent_iterations=window,
            )

        screenshots = sum(1 for tc in browser_calls if tc.name in SCREENSHOT_TOOLS)
        other = sum(
            1
            for r in window
            for tc in r.tool_calls
            if tc.name not in PASSIVE_TOOLS and not _is_browser_call(tc)
        )
        if screenshots > SCREENSHOT_FLOOD_LIMIT and other < SCREENSHOT_FLOOD_OTHER_MIN:
            return StuckVerdict(
                reason=StuckReason.BROWSER_LOOP,
                details=(
                    f"Excessive browser/screenshot activity ({screenshots} calls) with few "
                    f"other actions ({other}). Visual verification may be complete; call "
                    "done() if the task is finished."
                ),
                recent_iterations=window,
            )
        return None

    def _check_error_loop(self, window: list[IterationRecord]) -> StuckVerdict | None:
        errors = [
            signal
            for r in window
            for tc in r.tool_calls
            if (signal := tc.result.error_signal()) is not None
        ]
        if len(errors) < self.threshold:
            return None
        if len({e[:ERROR_PREFIX_CHARS] for e in errors}) != 1:
            return None
        return StuckVerdict(
            reason=StuckReason.ERROR_LOOP,
            details=f"Same error repeated {len(errors)} times",
            recent_iterations=window,
            repeated_error=errors[0],
        )

    def _check_oscillation(self, window: list[IterationRecord]) -> StuckVerdict | None:
        if len(window) < 4:
            return None
        tail = window[-4:]
        names = [",".join(tc.name for tc in r.tool_calls) for r in tail]
        a, b, c, d = names
        if a == c and b == d and a != b:
            return StuckVerdict(
                reason=StuckReason.OSCILLATION,
                details=f"Oscillating between patterns: [{a}] and [{b}]",
                recent_iterations=tail,
            )
        return None

    def _check_no_progress(self, window: list[IterationRecord]) -> StuckVerdict | None:
        min_iterations = max(self.threshold, NO_PROGRESS_MIN_ITERATIONS)
        if len(window) < min_iterations:
            return None

        distinct_tools = {tc.name for r in window for tc in r.tool_calls}
        if len(distinct_tools) >= NO_PROGRESS_MIN_DISTINCT_TOOLS:
            return None

        total_tokens = sum(r.total_tokens for r in window)
        if total_tokens > NO_PROGRESS_TOKEN_LIMIT and _files_changed(window) == 0:
            return StuckVerdict(
                reason=StuckReason.NO_PROGRESS,
                details=f"Used {total_tokens} tokens in {len(window)} iterations with no file changes",
                recent_iterations=window,
            )
        return None
