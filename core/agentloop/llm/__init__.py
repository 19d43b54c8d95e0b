"""LLM provider abstraction."""

from agentloop.llm.litellm import LiteLLMProvider
from agentloop.llm.mock import MockLLMProvider, MockScript
from agentloop.llm.provider import LLMProvider, LLMResponse, Tool, ToolResult, ToolUse

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "MockLLMProvider",
    "MockScript",
    "Tool",
    "ToolResult",
    "ToolUse",
]
