"""Tests for the LoopController iteration state machine.

Drives the real controller with the scriptable mock LLM and real tool
executors; nothing in the loop itself is mocked.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from agentloop.errors import ModelInvocationError
from agentloop.llm.mock import MockLLMProvider, MockScript
from agentloop.loop.completion import CustomCompletion, FileExistsCompletion
from agentloop.loop.controller import LoopConfig, LoopController
from agentloop.loop.state import LoopEndReason, LoopState, LoopStatusState
from agentloop.loop.stuck import StuckReason
from agentloop.runner.tool_registry import ToolRegistry
from agentloop.runner.tool_results import ExecResult, ToolCategory
from agentloop.runtime.budget import Budget
from agentloop.runtime.event_recorder import EventRecorder, read_trace
from agentloop.runtime.process_registry import ProcessRegistry
from agentloop.tools import create_default_tools

SYSTEM = "You are a test agent."


def make_tools(workdir: Path, recorder: EventRecorder | None = None) -> ToolRegistry:
    registry = create_default_tools(ProcessRegistry(), workdir, recorder)

    @registry.tool(name="bash", category=ToolCategory.EXEC)
    def bash(command: str) -> ExecResult:
        return ExecResult(stdout=f"ran {command}")

    return registry


def bash(command: str = "ls") -> dict:
    return {"name": "bash", "input": {"command": command}}


def think(thought: str = "hmm") -> dict:
    return {"name": "think", "input": {"thought": thought}}


def done(summary: str) -> dict:
    return {"name": "done", "input": {"summary": summary}}


def make_controller(
    llm: MockLLMProvider,
    workdir: Path,
    recorder: EventRecorder | None = None,
    **config_kwargs,
) -> LoopController:
    hooks = {k: config_kwargs.pop(k) for k in ("on_update", "on_stuck", "on_error") if k in config_kwargs}
    return LoopController(
        llm=llm,
        tools=make_tools(workdir, recorder),
        config=LoopConfig(**config_kwargs),
        recorder=recorder,
        **hooks,
    )


# ---------------------------------------------------------------------------
# Budget termination
# ---------------------------------------------------------------------------


class TestBudgetTermination:
    @pytest.mark.asyncio
    async def test_max_iterations_with_repeated_call(self, tmp_path: Path):
        llm = MockLLMProvider([MockScript(tool_calls=[bash()])], repeat_last=True)
        controller = make_controller(llm, tmp_path, budget=Budget(max_iterations=3))
        state = LoopState.new()

        result = await controller.run(state, SYSTEM)

        assert result.reason == LoopEndReason.MAX_ITERATIONS
        assert result.success is False
        assert result.iterations == 3
        assert len(state.iterations) == 3
        assert len(llm.calls) == 3
        assert state.status == LoopStatusState.DONE
        assert result.summary == "Task ended: max_iterations"

    @pytest.mark.asyncio
    async def test_cost_limit_stops_next_iteration(self, tmp_path: Path):
        llm = MockLLMProvider(
            [MockScript(tool_calls=[think()], input_tokens=1_000_000, output_tokens=500_000)],
            repeat_last=True,
        )
        recorder = EventRecorder(tmp_path / "trace.ndjson")
        controller = make_controller(llm, tmp_path, recorder)
        state = LoopState.new()

        result = await controller.run(state, SYSTEM)

        assert result.reason == LoopEndReason.MAX_COST
        assert result.iterations == 1
        assert len(llm.calls) == 1
        assert result.cost == pytest.approx(10.5)
        assert result.tokens == {"input": 1_000_000, "output": 500_000, "total": 1_500_000}
        types = [e.type for e in read_trace(recorder.path)]
        assert "budget_warning" in types

    @pytest.mark.asyncio
    async def test_stop_flag_before_run(self, tmp_path: Path):
        llm = MockLLMProvider([MockScript(tool_calls=[think()])])
        controller = make_controller(llm, tmp_path)
        state = LoopState.new()
        state.should_stop = True

        result = await controller.run(state, SYSTEM)

        assert result.reason == LoopEndReason.STOPPED
        assert result.iterations == 0
        assert llm.calls == []
        assert state.status == LoopStatusState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_requested_mid_run(self, tmp_path: Path):
        llm = MockLLMProvider([MockScript(tool_calls=[think()])], repeat_last=True)
        state = LoopState.new()

        def on_update(status):
            if status.iteration == 1:
                state.should_stop = True

        controller = make_controller(llm, tmp_path, on_update=on_update)
        result = await controller.run(state, SYSTEM)

        assert result.reason == LoopEndReason.STOPPED
        assert result.iterations == 2


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class TestCompletion:
    @pytest.mark.asyncio
    async def test_done_tool_completes(self, tmp_path: Path):
        llm = MockLLMProvider(
            [
                MockScript(tool_calls=[think("plan")]),
                MockScript(text="All good.", tool_calls=[done("Implemented the endpoint")]),
            ]
        )
        controller = make_controller(llm, tmp_path)
        state = LoopState.new()

        result = await controller.run(state, SYSTEM)

        assert result.success is True
        assert result.reason == LoopEndReason.COMPLETED
        assert result.summary == "Implemented the endpoint"
        assert result.iterations == 2
        assert state.status == LoopStatusState.DONE

    @pytest.mark.asyncio
    async def test_file_completion_and_modified_files(self, tmp_path: Path):
        write_app = {"name": "writeFile", "input": {"path": "app.py", "content": "print('hi')\n"}}
        write_done = {"name": "writeFile", "input": {"path": "DONE.md", "content": "Finished the app."}}
        llm = MockLLMProvider([MockScript(tool_calls=[write_app]), MockScript(tool_calls=[write_done])])
        controller = make_controller(llm, tmp_path, completion=FileExistsCompletion(tmp_path / "DONE.md"))
        state = LoopState.new()

        result = await controller.run(state, SYSTEM)

        assert result.success is True
        assert result.summary == "Finished the app."
        assert state.files_modified == {"app.py", "DONE.md"}
        assert state.iterations[0].files_modified == ["app.py"]

    @pytest.mark.asyncio
    async def test_failing_custom_check_counts_as_incomplete(self, tmp_path: Path):
        def check(ctx):
            raise RuntimeError("health endpoint unreachable")

        llm = MockLLMProvider([MockScript(tool_calls=[bash()])], repeat_last=True)
        recorder = EventRecorder(tmp_path / "trace.ndjson")
        controller = make_controller(
            llm,
            tmp_path,
            recorder,
            budget=Budget(max_iterations=2),
            completion=CustomCompletion(check),
        )

        result = await controller.run(LoopState.new(), SYSTEM)

        assert result.reason == LoopEndReason.MAX_ITERATIONS
        failures = [e for e in read_trace(recorder.path) if e.type == "completion_check_failed"]
        assert len(failures) == 2
        assert failures[0].model_dump()["strategy"] == "custom"

    @pytest.mark.asyncio
    async def test_custom_check_receives_progress(self, tmp_path: Path):
        seen = []

        def check(ctx):
            seen.append((ctx.iteration, len(ctx.recent_iterations)))
            return ctx.iteration >= 1

        llm = MockLLMProvider([MockScript(tool_calls=[bash()])], repeat_last=True)
        controller = make_controller(llm, tmp_path, completion=CustomCompletion(check))

        result = await controller.run(LoopState.new(), SYSTEM)

        assert result.success is True
        assert result.iterations == 2
        assert seen == [(0, 1), (1, 2)]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_model_error_is_recorded_and_loop_continues(self, tmp_path: Path):
        llm = MockLLMProvider(
            [
                MockScript(error=ModelInvocationError("overloaded")),
                MockScript(tool_calls=[done("recovered")]),
            ]
        )
        errors = []
        controller = make_controller(llm, tmp_path, on_error=errors.append)
        state = LoopState.new()

        result = await controller.run(state, SYSTEM)

        assert result.success is True
        assert result.iterations == 2
        assert state.iterations[0].error == "overloaded"
        assert len(errors) == 1
        assert errors[0].code == "ITERATION_ERROR"
        assert isinstance(errors[0].cause, ModelInvocationError)

    @pytest.mark.asyncio
    async def test_circuit_breaker_after_three_empty_failures(self, tmp_path: Path):
        llm = MockLLMProvider([MockScript(error=RuntimeError("connection refused"))], repeat_last=True)
        recorder = EventRecorder(tmp_path / "trace.ndjson")
        controller = make_controller(llm, tmp_path, recorder)
        state = LoopState.new()

        result = await controller.run(state, SYSTEM)

        assert result.success is False
        assert result.reason == LoopEndReason.ERROR
        assert result.iterations == 3
        assert result.error is not None
        assert result.error.message == "connection refused"
        assert state.status == LoopStatusState.FAILED
        events = read_trace(recorder.path)
        assert sum(1 for e in events if e.type == "iteration_error") == 3
        assert events[-1].type == "summary"

    @pytest.mark.asyncio
    async def test_failing_observers_do_not_break_the_loop(self, tmp_path: Path):
        def on_update(status):
            raise ValueError("dashboard offline")

        llm = MockLLMProvider([MockScript(tool_calls=[think()]), MockScript(tool_calls=[done("ok")])])
        controller = make_controller(llm, tmp_path, on_update=on_update)

        result = await controller.run(LoopState.new(), SYSTEM)

        assert result.success is True


# ---------------------------------------------------------------------------
# Stuck handling and nudges
# ---------------------------------------------------------------------------


class TestStuckAndNudges:
    @pytest.mark.asyncio
    async def test_stuck_policy_nudge_reaches_next_iteration(self, tmp_path: Path):
        verdicts = []

        def on_stuck(verdict):
            verdicts.append(verdict)
            return "Try something else"

        llm = MockLLMProvider([MockScript(tool_calls=[bash("npm test")])], repeat_last=True)
        controller = make_controller(llm, tmp_path, budget=Budget(max_iterations=7), on_stuck=on_stuck)
        state = LoopState.new()

        result = await controller.run(state, SYSTEM)

        assert result.reason == LoopEndReason.MAX_ITERATIONS
        assert len(verdicts) == 3
        assert verdicts[0].reason == StuckReason.REPETITIVE
        assert state.iterations[4].nudge is None
        assert state.iterations[5].nudge == "Try something else"
        assert "[System Nudge]: Try something else" in llm.calls[5]["messages"][-1]["content"]

    @pytest.mark.asyncio
    async def test_async_stuck_policy(self, tmp_path: Path):
        async def on_stuck(verdict):
            return f"Stuck: {verdict.reason}"

        llm = MockLLMProvider([MockScript(tool_calls=[bash()])], repeat_last=True)
        controller = make_controller(llm, tmp_path, budget=Budget(max_iterations=6), on_stuck=on_stuck)
        state = LoopState.new()

        await controller.run(state, SYSTEM)

        assert state.iterations[5].nudge == "Stuck: repetitive"

    @pytest.mark.asyncio
    async def test_stuck_detection_can_be_disabled(self, tmp_path: Path):
        calls = []
        llm = MockLLMProvider([MockScript(tool_calls=[bash()])], repeat_last=True)
        controller = make_controller(
            llm,
            tmp_path,
            budget=Budget(max_iterations=6),
            stuck_detection=False,
            on_stuck=calls.append,
        )

        await controller.run(LoopState.new(), SYSTEM)

        assert calls == []

    @pytest.mark.asyncio
    async def test_external_nudge_is_consumed_once(self, tmp_path: Path):
        llm = MockLLMProvider([MockScript(tool_calls=[think()]), MockScript(tool_calls=[done("ok")])])
        controller = make_controller(llm, tmp_path)
        state = LoopState.new()
        state.pending_nudge = "Focus on the failing test"

        await controller.run(state, SYSTEM)

        first_message = llm.calls[0]["messages"][-1]["content"]
        assert first_message == (
            "[Iteration 1/50, Cost: $0.00/$10.00]\n\n[System Nudge]: Focus on the failing test\n\nBegin."
        )
        assert state.iterations[0].nudge == "Focus on the failing test"
        assert state.iterations[1].nudge is None
        assert state.pending_nudge is None


# ---------------------------------------------------------------------------
# History and observers
# ---------------------------------------------------------------------------


class TestHistory:
    @pytest.mark.asyncio
    async def test_assistant_turns_are_kept_in_history(self, tmp_path: Path):
        llm = MockLLMProvider(
            [
                MockScript(text="Looking around.", tool_calls=[bash("ls -la")]),
                MockScript(tool_calls=[done("ok")]),
            ]
        )
        controller = make_controller(llm, tmp_path)

        await controller.run(LoopState.new(), SYSTEM)

        second_call = llm.calls[1]["messages"]
        assert [m["role"] for m in second_call] == ["user", "assistant", "user"]
        assert second_call[1]["content"].startswith("Looking around.\n[bash]")
        assert llm.calls[1]["system"] == SYSTEM
        assert llm.calls[1]["max_steps"] == 10

    @pytest.mark.asyncio
    async def test_status_updates(self, tmp_path: Path):
        updates = []
        llm = MockLLMProvider(
            [
                MockScript(tool_calls=[bash(), think()]),
                MockScript(tool_calls=[bash("pytest")]),
                MockScript(tool_calls=[done("ok")]),
            ]
        )
        controller = make_controller(llm, tmp_path, on_update=updates.append)
        state = LoopState.new()

        await controller.run(state, SYSTEM)

        assert [u.iteration for u in updates] == [0, 1]
        assert updates[1].last_actions == ["bash", "think", "bash"]
        assert updates[1].tokens["total"] == 40
        assert updates[0].id == state.id

    @pytest.mark.asyncio
    async def test_trace_covers_the_run(self, tmp_path: Path):
        recorder = EventRecorder(tmp_path / "trace.ndjson")
        llm = MockLLMProvider([MockScript(tool_calls=[bash()]), MockScript(tool_calls=[done("shipped")])])
        controller = make_controller(llm, tmp_path, recorder)

        await controller.run(LoopState.new(), SYSTEM)

        types = [e.type for e in read_trace(recorder.path)]
        assert types[0] == "iteration_start"
        assert types.count("iteration_end") == 2
        assert types.count("model_response") == 2
        assert types[-2:] == ["agent_complete", "summary"]
        assert recorder.tool_call_counts == {"bash": 1, "done": 1}
