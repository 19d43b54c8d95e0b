"""Scriptable in-process LLM provider for tests and dry runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agentloop.llm.provider import LLMProvider, LLMResponse, Tool, ToolExecutor, ToolUse


@dataclass
class MockScript:
    """One scripted ``complete_with_tools`` turn.

    ``tool_calls`` entries are ``{"name": ..., "input": {...}}`` dicts with an
    optional ``"id"``. If ``error`` is set, the call raises it instead.
    """

    text: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 10
    output_tokens: int = 10
    error: BaseException | None = None


class MockLLMProvider(LLMProvider):
    """Mock LLM that plays back a flat list of MockScript entries.

    Each ``complete_with_tools`` call pops the next entry, runs its tool calls
    through the real executor and returns the scripted usage. With
    ``repeat_last=True`` the final entry is replayed forever; otherwise an
    exhausted script yields an empty text turn. ``complete`` returns a fixed
    summary (used by context compaction) or raises ``summary_error``.
    """

    def __init__(
        self,
        scripts: list[MockScript] | None = None,
        repeat_last: bool = False,
        summary_text: str = "Conversation summary for compaction.",
        summary_error: BaseException | None = None,
    ):
        self._scripts: list[MockScript] = list(scripts or [])
        self._call_index = 0
        self.repeat_last = repeat_last
        self.summary_text = summary_text
        self.summary_error = summary_error
        self.model = "mock-scriptable"
        self.calls: list[dict[str, Any]] = []
        self.summary_calls: list[dict[str, Any]] = []

    def _next_script(self) -> MockScript | None:
        if self._call_index < len(self._scripts):
            script = self._scripts[self._call_index]
            self._call_index += 1
            return script
        if self.repeat_last and self._scripts:
            return self._scripts[-1]
        return None

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        self.summary_calls.append({"messages": messages, "system": system, "max_tokens": max_tokens})
        if self.summary_error is not None:
            raise self.summary_error
        return LLMResponse(
            content=self.summary_text,
            model=self.model,
            input_tokens=10,
            output_tokens=10,
        )

    async def complete_with_tools(
        self,
        messages: list[dict[str, Any]],
        system: str,
        tools: list[Tool],
        tool_executor: ToolExecutor,
        max_steps: int = 10,
    ) -> LLMResponse:
        self.calls.append(
            {"messages": list(messages), "system": system, "tools": tools, "max_steps": max_steps}
        )
        script = self._next_script()
        if script is None:
            return LLMResponse(content="(no more scripts)", model=self.model, input_tokens=5, output_tokens=5)
        if script.error is not None:
            raise script.error

        tool_uses: list[ToolUse] = []
        for i, tc in enumerate(script.tool_calls[:max_steps]):
            tool_use = ToolUse(
                id=tc.get("id", f"tc_{len(self.calls)}_{i}"),
                name=tc["name"],
                input=dict(tc.get("input", {})),
            )
            tool_uses.append(tool_use)
            await tool_executor(tool_use)

        return LLMResponse(
            content=script.text,
            model=self.model,
            input_tokens=script.input_tokens,
            output_tokens=script.output_tokens,
            stop_reason="tool_use" if tool_uses else "end_turn",
            tool_uses=tool_uses,
            steps=max(1, len(tool_uses)),
        )
