"""Tests for run-context propagation and log formatters."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from agentloop.observability import clear_trace_context, get_trace_context, set_trace_context
from agentloop.observability.logging import HumanReadableFormatter, StructuredFormatter


@pytest.fixture(autouse=True)
def reset_context():
    clear_trace_context()
    yield
    clear_trace_context()


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("agentloop.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTraceContext:
    def test_merge_and_clear(self):
        set_trace_context(run_id="20240101T000000_abcd1234")
        set_trace_context(iteration=3)
        assert get_trace_context() == {"run_id": "20240101T000000_abcd1234", "iteration": 3}

        clear_trace_context()
        assert get_trace_context() == {}

    def test_get_returns_a_copy(self):
        set_trace_context(run_id="r1")
        get_trace_context()["run_id"] = "mutated"
        assert get_trace_context()["run_id"] == "r1"

    @pytest.mark.asyncio
    async def test_isolated_between_tasks(self):
        async def run(run_id: str) -> dict:
            set_trace_context(run_id=run_id)
            await asyncio.sleep(0)
            return get_trace_context()

        first, second = await asyncio.gather(run("a"), run("b"))
        assert first == {"run_id": "a"}
        assert second == {"run_id": "b"}


class TestFormatters:
    def test_structured_includes_context_and_extras(self):
        set_trace_context(run_id="run-1", iteration=2)
        line = StructuredFormatter().format(make_record("\x1b[32mcalled tool\x1b[0m", tool_name="bash", cost=0.01))

        entry = json.loads(line)
        assert entry["message"] == "called tool"
        assert entry["level"] == "info"
        assert entry["run_id"] == "run-1"
        assert entry["iteration"] == 2
        assert entry["tool_name"] == "bash"
        assert entry["cost"] == 0.01

    def test_human_prefix(self):
        set_trace_context(run_id="20240101T000000_abcd1234", iteration=7)
        line = HumanReadableFormatter().format(make_record("hello", event="tool_call"))
        assert "[run:abcd1234 | iter:7] hello [tool_call]" in line

    def test_human_without_context(self):
        line = HumanReadableFormatter().format(make_record("plain"))
        assert line.endswith(" plain")
        assert "run:" not in line
