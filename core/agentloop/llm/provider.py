"""LLM Provider abstraction for pluggable model backends."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Tool:
    """A tool the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolUse:
    """A tool call requested by the LLM."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ToolResult:
    """Result of executing a tool, as fed back to the model."""

    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass
class LLMResponse:
    """Response from an LLM call.

    For ``complete_with_tools`` the token counts are summed over every step
    and ``tool_uses`` lists each tool call in the order it was made.
    """

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    tool_uses: list[ToolUse] = field(default_factory=list)
    steps: int = 1
    raw_response: Any = None


ToolExecutor = Callable[[ToolUse], Awaitable[ToolResult]]


class LLMProvider(ABC):
    """
    Abstract LLM provider - plug in any model backend.

    Implementations should handle:
    - API authentication
    - Request/response formatting
    - Token counting
    """

    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        """
        Generate a single completion.

        Args:
            messages: Conversation history [{role: "user"|"assistant", content: str}]
            system: System prompt
            tools: Available tools for the LLM to use
            max_tokens: Maximum tokens to generate

        Returns:
            LLMResponse with content and metadata
        """

    @abstractmethod
    async def complete_with_tools(
        self,
        messages: list[dict[str, Any]],
        system: str,
        tools: list[Tool],
        tool_executor: ToolExecutor,
        max_steps: int = 10,
    ) -> LLMResponse:
        """
        Run a tool-use loop until the LLM produces a final response.

        Args:
            messages: Initial conversation
            system: System prompt
            tools: Available tools
            tool_executor: Coroutine executing one tool call: (ToolUse) -> ToolResult
            max_steps: Max model round trips before stopping

        Returns:
            Final LLMResponse with usage summed across steps
        """
