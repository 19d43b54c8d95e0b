"""Budget limits and usage accounting for a run.

Cost is always derived from token usage at fixed per-token rates; there is
no separately tracked spend.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any

from agentloop.loop.state import LoopEndReason, LoopState

logger = logging.getLogger(__name__)

COST_PER_INPUT_TOKEN = 0.000003
COST_PER_OUTPUT_TOKEN = 0.000015

DEFAULT_MAX_ITERATIONS = 50
DEFAULT_MAX_COST = 10.0
DEFAULT_TIMEOUT = "4h"
DEFAULT_MAX_TOKENS_PER_ITERATION = 100_000


# ---------------------------------------------------------------------------
# Duration parsing
# ---------------------------------------------------------------------------

_SECOND = 1000
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR
_WEEK = 7 * _DAY

_UNITS_MS: dict[str, float] = {
    "ms": 1,
    "msec": 1,
    "msecs": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": _SECOND,
    "sec": _SECOND,
    "secs": _SECOND,
    "second": _SECOND,
    "seconds": _SECOND,
    "m": _MINUTE,
    "min": _MINUTE,
    "mins": _MINUTE,
    "minute": _MINUTE,
    "minutes": _MINUTE,
    "h": _HOUR,
    "hr": _HOUR,
    "hrs": _HOUR,
    "hour": _HOUR,
    "hours": _HOUR,
    "d": _DAY,
    "day": _DAY,
    "days": _DAY,
    "w": _WEEK,
    "week": _WEEK,
    "weeks": _WEEK,
}

_DURATION_RE = re.compile(r"^(-?\d*\.?\d+)\s*([a-z]*)$")


def parse_duration(value: int | float | str) -> int:
    """Parse a timeout into milliseconds.

    Numbers are taken as milliseconds. Strings accept an optional unit:
    ``"500"``, ``"250ms"``, ``"30s"``, ``"5m"``, ``"4h"``, ``"1.5h"``,
    ``"2 hours"``, ``"1d"``, ``"1w"``.

    Raises:
        ValueError: If the value cannot be parsed or is negative.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        if value < 0 or math.isnan(value):
            raise ValueError(f"Invalid duration: {value!r}")
        return int(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid duration: {value!r}")

    match = _DURATION_RE.match(value.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount = float(match.group(1))
    unit = match.group(2) or "ms"
    if unit not in _UNITS_MS:
        raise ValueError(f"Unknown duration unit {unit!r} in {value!r}")
    if amount < 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return int(round(amount * _UNITS_MS[unit]))


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    return input_tokens * COST_PER_INPUT_TOKEN + output_tokens * COST_PER_OUTPUT_TOKEN


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

_CAMEL_KEYS = {
    "maxIterations": "max_iterations",
    "maxCost": "max_cost",
    "timeout": "timeout",
    "maxTokensPerIteration": "max_tokens_per_iteration",
}


@dataclass(frozen=True)
class Budget:
    """Limits bounding a run. Immutable once built."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_cost: float = DEFAULT_MAX_COST
    timeout: int | str = DEFAULT_TIMEOUT
    max_tokens_per_iteration: int = DEFAULT_MAX_TOKENS_PER_ITERATION

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Any] | None = None) -> Budget:
        """Merge user overrides (snake_case or camelCase keys) over the defaults.

        ``None`` values are ignored so partially-filled configs keep defaults.
        """
        if not overrides:
            return cls()
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in overrides.items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown budget field: {key!r}")
            if value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxIterations": self.max_iterations,
            "maxCost": self.max_cost,
            "timeout": self.timeout,
            "maxTokensPerIteration": self.max_tokens_per_iteration,
        }


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class BudgetTracker:
    """Evaluates limit predicates against a LoopState and applies usage.

    The timeout string is parsed once here, at loop start.
    """

    def __init__(self, budget: Budget | None = None, clock: Callable[[], float] = time.monotonic):
        self.budget = budget or Budget()
        self.timeout_ms = parse_duration(self.budget.timeout)
        self._clock = clock

    def elapsed_ms(self, state: LoopState) -> int:
        return int((self._clock() - state.started_at) * 1000)

    def check(self, state: LoopState) -> LoopEndReason | None:
        """Return the first exhausted limit, in iterations → cost → time order."""
        if state.iteration >= self.budget.max_iterations:
            return LoopEndReason.MAX_ITERATIONS
        if state.cost >= self.budget.max_cost:
            return LoopEndReason.MAX_COST
        if self.elapsed_ms(state) >= self.timeout_ms:
            return LoopEndReason.TIMEOUT
        return None

    def record_usage(self, state: LoopState, input_tokens: int, output_tokens: int) -> float:
        """Apply one model call's usage to ``state``. Returns the cost delta."""
        input_tokens = max(0, int(input_tokens or 0))
        output_tokens = max(0, int(output_tokens or 0))
        delta = estimate_cost(input_tokens, output_tokens)
        state.tokens.add(input_tokens, output_tokens)
        state.add_cost(delta)

        if self.exceeds_iteration_tokens(input_tokens, output_tokens):
            logger.warning(
                "Iteration used %d tokens (limit %d per iteration)",
                input_tokens + output_tokens,
                self.budget.max_tokens_per_iteration,
            )
        return delta

    def exceeds_iteration_tokens(self, input_tokens: int, output_tokens: int) -> bool:
        return input_tokens + output_tokens > self.budget.max_tokens_per_iteration

    def remaining(self, state: LoopState) -> dict[str, Any]:
        return {
            "iterations": max(0, self.budget.max_iterations - state.iteration),
            "cost": max(0.0, self.budget.max_cost - state.cost),
            "time_ms": max(0, self.timeout_ms - self.elapsed_ms(state)),
        }
