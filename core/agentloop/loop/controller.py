"""LoopController: the iteration state machine of an agent run.

States: idle → running ⇄ stuck → completing → done, with failed and stopped
as alternate terminals. One iteration (model call plus all nested tool
steps) finishes before the next begins; the stop flag and budget limits are
only checked at iteration boundaries.

Per iteration, in order:

1. stop flag → ``stopped``
2. budget check → ``max_iterations`` / ``max_cost`` / ``timeout``
3. banner (+ pending nudge) appended as a user message
4. context compaction
5. model call with tools, bounded to ``max_tool_steps``
6. usage → budget
7. tool journal → IterationRecord, nudge consumed
8. ``done`` tool → ``completed``
9. completion strategy → ``completed``
10. stuck analysis → stuck policy → nudge for next iteration
11. observer update
12. iteration += 1

A failure in 4-9 is recorded and the loop moves on; three consecutive
iterations with neither tool calls nor tokens end the run as ``failed``.
"""

from __future__ import annotations

import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agentloop.errors import CompletionCheckError
from agentloop.llm.provider import LLMProvider
from agentloop.loop.completion import (
    CompletionContext,
    CompletionResult,
    CompletionStrategy,
    ToolSignalCompletion,
)
from agentloop.loop.conversation import (
    CompactionResult,
    ContextCompactor,
    Conversation,
    estimate_tokens,
)
from agentloop.loop.prompt import build_iteration_message
from agentloop.loop.state import (
    IterationRecord,
    LoopEndReason,
    LoopError,
    LoopResult,
    LoopState,
    LoopStatus,
    LoopStatusState,
    ToolInvocationRecord,
)
from agentloop.loop.stuck import StuckAnalyzer, StuckVerdict
from agentloop.observability import set_trace_context
from agentloop.runner.tool_registry import ToolRegistry
from agentloop.runner.tool_results import WriteResult
from agentloop.runtime.budget import Budget, BudgetTracker
from agentloop.runtime.event_recorder import EventRecorder, sanitize_for_trace

logger = logging.getLogger(__name__)

ITERATION_ERROR = "ITERATION_ERROR"

StuckPolicy = Callable[[StuckVerdict], str | None | Awaitable[str | None]]
StatusObserver = Callable[[LoopStatus], Any]
ErrorObserver = Callable[[LoopError], Any]

_TERMINAL_STATUS = {
    LoopEndReason.COMPLETED: LoopStatusState.DONE,
    LoopEndReason.MAX_ITERATIONS: LoopStatusState.DONE,
    LoopEndReason.MAX_COST: LoopStatusState.DONE,
    LoopEndReason.TIMEOUT: LoopStatusState.DONE,
    LoopEndReason.STOPPED: LoopStatusState.STOPPED,
    LoopEndReason.ERROR: LoopStatusState.FAILED,
}


@dataclass
class LoopConfig:
    """Configuration for a loop run."""

    budget: Budget = field(default_factory=Budget)
    completion: CompletionStrategy = field(default_factory=ToolSignalCompletion)
    max_tool_steps: int = 10
    stuck_detection: bool = True
    stuck_threshold: int = 5
    stuck_window: int = 8
    circuit_breaker_window: int = 3


def make_status(state: LoopState, elapsed_ms: int) -> LoopStatus:
    return LoopStatus(
        id=state.id,
        status=state.status,
        iteration=state.iteration,
        cost=state.cost,
        tokens=state.tokens.to_dict(),
        elapsed_ms=elapsed_ms,
        last_actions=[tc.name for r in state.iterations[-5:] for tc in r.tool_calls],
        files_modified=sorted(state.files_modified),
    )


async def call_hook(hook: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callback and return its result."""
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _modified_files(invocations: list[ToolInvocationRecord]) -> list[str]:
    paths = [inv.result.path for inv in invocations if isinstance(inv.result, WriteResult)]
    return list(dict.fromkeys(paths))


def _assistant_digest(text: str, invocations: list[ToolInvocationRecord]) -> str:
    """Assistant turn as kept in history: model text plus one line per tool call."""
    lines = [text] if text else []
    for inv in invocations:
        args = json.dumps(sanitize_for_trace(inv.args), default=str)
        if len(args) > 500:
            args = args[:500] + "..."
        lines.append(f"[{inv.name}] {args} -> {inv.result.summary()}")
    return "\n".join(lines)


class LoopController:
    """Drives one run of the agent loop over an explicit LoopState."""

    def __init__(
        self,
        llm: LLMProvider,
        tools: ToolRegistry,
        config: LoopConfig | None = None,
        recorder: EventRecorder | None = None,
        compactor: ContextCompactor | None = None,
        on_update: StatusObserver | None = None,
        on_stuck: StuckPolicy | None = None,
        on_error: ErrorObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.llm = llm
        self.tools = tools
        self.config = config or LoopConfig()
        self.recorder = recorder
        self.compactor = compactor or ContextCompactor(llm=llm)
        self.on_update = on_update
        self.on_stuck = on_stuck
        self.on_error = on_error
        self.clock = clock
        self.analyzer = (
            StuckAnalyzer(self.config.stuck_threshold, self.config.stuck_window)
            if self.config.stuck_detection
            else None
        )

    async def run(self, state: LoopState, system_prompt: str) -> LoopResult:
        budget = BudgetTracker(self.config.budget, clock=self.clock)
        conversation = Conversation()
        self.tools.done_signaled = False
        self.tools.done_summary = None
        set_trace_context(run_id=state.id)
        logger.info("Loop %s starting (budget %s)", state.id, self.config.budget.to_dict())

        while not state.should_stop:
            state.status = LoopStatusState.RUNNING
            set_trace_context(iteration=state.iteration)
            if self.recorder:
                self.recorder.record_iteration_start(state.iteration, state.cost, state.tokens.to_dict())

            reason = budget.check(state)
            if reason is not None:
                return self._finish(state, budget, reason)

            started = self.clock()
            nudge = state.pending_nudge
            message = build_iteration_message(
                state.iteration,
                self.config.budget.max_iterations,
                state.cost,
                self.config.budget.max_cost,
                nudge,
            )
            conversation.add("user", message)
            if self.recorder:
                self.recorder.record_message("user", message, state.iteration)

            self.tools.begin_iteration(state.iteration)
            record: IterationRecord | None = None
            try:
                record = await self._iterate(state, budget, conversation, system_prompt, nudge, started)

                # 8. explicit done signal
                if self.tools.done_signaled:
                    if self.tools.done_summary:
                        state.summary = self.tools.done_summary
                    state.status = LoopStatusState.COMPLETING
                    state.iteration += 1
                    return self._finish(state, budget, LoopEndReason.COMPLETED)

                # 9. completion strategy
                completion = await self._check_completion(state)
                if completion.complete:
                    if completion.summary:
                        state.summary = completion.summary
                    state.status = LoopStatusState.COMPLETING
                    state.iteration += 1
                    return self._finish(state, budget, LoopEndReason.COMPLETED)
            except Exception as e:
                failure = await self._record_failure(state, record, e, started)
                state.iteration += 1
                if failure is not None:
                    return self._finish(state, budget, LoopEndReason.ERROR, error=failure)
                continue

            # 10. stuck analysis
            if self.analyzer is not None:
                verdict = self.analyzer.check(state.iterations)
                if verdict is not None:
                    await self._handle_stuck(state, verdict)

            # 11. observer
            if self.on_update is not None:
                try:
                    await call_hook(self.on_update, make_status(state, budget.elapsed_ms(state)))
                except Exception:
                    logger.exception("on_update callback failed (non-fatal)")

            # 12.
            state.iteration += 1

        return self._finish(state, budget, LoopEndReason.STOPPED)

    # -------------------------------------------------------------------
    # Iteration body (steps 4-7)
    # -------------------------------------------------------------------

    async def _iterate(
        self,
        state: LoopState,
        budget: BudgetTracker,
        conversation: Conversation,
        system_prompt: str,
        nudge: str | None,
        started: float,
    ) -> IterationRecord:
        # 4. compaction
        compacted = await self.compactor.compact(conversation.messages, system_prompt)
        self._trace_context(state.iteration, compacted, system_prompt)

        # 5. model call
        response = await self.llm.complete_with_tools(
            messages=[m.to_llm_dict() for m in compacted.messages],
            system=system_prompt,
            tools=self.tools.get_tools(),
            tool_executor=self.tools.execute,
            max_steps=self.config.max_tool_steps,
        )

        # 6. usage
        cost = budget.record_usage(state, response.input_tokens, response.output_tokens)
        if self.recorder and budget.exceeds_iteration_tokens(response.input_tokens, response.output_tokens):
            self.recorder.record_budget_warning(
                state.iteration,
                response.input_tokens + response.output_tokens,
                self.config.budget.max_tokens_per_iteration,
            )

        # 7. record
        invocations = self.tools.drain_invocations()
        files = _modified_files(invocations)
        tokens = {"input": response.input_tokens, "output": response.output_tokens}
        if self.recorder:
            self.recorder.record_model_response(
                state.iteration, response.content, [inv.name for inv in invocations], tokens
            )

        record = IterationRecord(
            index=state.iteration,
            duration_ms=int((self.clock() - started) * 1000),
            input_tokens=max(0, response.input_tokens),
            output_tokens=max(0, response.output_tokens),
            cost=cost,
            tool_calls=invocations,
            files_modified=files or None,
            response_text=response.content or None,
            nudge=nudge,
        )
        state.append_iteration(record)
        if nudge is not None and state.pending_nudge == nudge:
            state.pending_nudge = None

        logger.info(
            "Iteration %d: %d tool calls, %d tokens, $%.4f",
            state.iteration,
            len(invocations),
            record.total_tokens,
            cost,
        )
        if self.recorder:
            self.recorder.record_iteration_end(
                state.iteration, record.duration_ms, tokens, cost, len(invocations)
            )

        digest = _assistant_digest(response.content, invocations)
        if digest:
            conversation.add("assistant", digest)
            if self.recorder:
                self.recorder.record_message("assistant", digest, state.iteration)
        return record

    def _trace_context(self, iteration: int, compacted: CompactionResult, system_prompt: str) -> None:
        if self.recorder is None:
            return
        if compacted.new_tokens < compacted.original_tokens:
            self.recorder.record_context_summarized(
                iteration, compacted.original_tokens, compacted.new_tokens, compacted.strategy
            )
        sized = sorted(
            ((i, m, m.estimated_tokens()) for i, m in enumerate(compacted.messages)),
            key=lambda t: t[2],
            reverse=True,
        )
        self.recorder.record_context_analysis(
            iteration,
            system_prompt_tokens=estimate_tokens(system_prompt),
            message_count=len(compacted.messages),
            total_message_tokens=sum(t for _, _, t in sized),
            largest_messages=[
                {
                    "index": i,
                    "role": m.role,
                    "tokens": t,
                    "preview": m.content[:200] + ("..." if len(m.content) > 200 else ""),
                }
                for i, m, t in sized[:5]
            ],
        )

    # -------------------------------------------------------------------
    # Completion, stuck handling, failures
    # -------------------------------------------------------------------

    async def _check_completion(self, state: LoopState) -> CompletionResult:
        strategy = self.config.completion
        try:
            return await strategy.check(CompletionContext.from_state(state))
        except CompletionCheckError as e:
            logger.warning("Completion check failed; treating as incomplete: %s", e)
            if self.recorder:
                self.recorder.record_completion_check_failed(
                    state.iteration, getattr(strategy, "kind", type(strategy).__name__), e
                )
            return CompletionResult(complete=False)

    async def _handle_stuck(self, state: LoopState, verdict: StuckVerdict) -> None:
        state.status = LoopStatusState.STUCK
        logger.warning("Stuck (%s): %s", verdict.reason, verdict.details)
        if self.recorder:
            self.recorder.record_stuck(state.iteration, str(verdict.reason), verdict.details)
        if self.on_stuck is None:
            return

        try:
            nudge = await call_hook(self.on_stuck, verdict)
        except Exception:
            logger.exception("on_stuck callback failed (non-fatal)")
            return
        if nudge:
            state.pending_nudge = nudge
            if self.recorder:
                self.recorder.record_nudge(state.iteration, nudge)

    async def _record_failure(
        self,
        state: LoopState,
        record: IterationRecord | None,
        error: Exception,
        started: float,
    ) -> LoopError | None:
        """Record a failed iteration. Returns the LoopError if the breaker trips."""
        loop_error = LoopError(code=ITERATION_ERROR, message=str(error) or type(error).__name__, cause=error)
        logger.error("Iteration %d failed: %s", state.iteration, loop_error.message, exc_info=error)

        if record is None:
            state.append_iteration(
                IterationRecord(
                    index=state.iteration,
                    duration_ms=int((self.clock() - started) * 1000),
                    tool_calls=self.tools.drain_invocations(),
                    nudge=state.pending_nudge,
                    error=loop_error.message,
                )
            )
        else:
            record.error = loop_error.message

        if self.recorder:
            self.recorder.record_iteration_error(state.iteration, error, ITERATION_ERROR)
        if self.on_error is not None:
            try:
                await call_hook(self.on_error, loop_error)
            except Exception:
                logger.exception("on_error callback failed (non-fatal)")

        window = self.config.circuit_breaker_window
        recent = state.iterations[-window:]
        if len(recent) >= window and all(not r.tool_calls and r.total_tokens == 0 for r in recent):
            logger.error("%d consecutive iterations without progress; stopping", window)
            return loop_error
        return None

    def _finish(
        self,
        state: LoopState,
        budget: BudgetTracker,
        reason: LoopEndReason,
        error: LoopError | None = None,
    ) -> LoopResult:
        state.status = _TERMINAL_STATUS[reason]
        success = reason == LoopEndReason.COMPLETED
        result = LoopResult(
            success=success,
            reason=reason,
            iterations=state.iteration,
            cost=state.cost,
            tokens=state.tokens.to_dict(),
            elapsed_ms=budget.elapsed_ms(state),
            summary=state.summary or ("Task completed" if success else f"Task ended: {reason}"),
            error=error,
        )
        logger.info(
            "Loop %s finished: %s after %d iterations ($%.4f)",
            state.id,
            reason,
            result.iterations,
            result.cost,
        )
        if self.recorder:
            self.recorder.record_agent_complete(result, state)
        return result
