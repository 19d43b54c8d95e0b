"""LiteLLM-backed provider: one interface over Anthropic, OpenAI and friends."""

from __future__ import annotations

import json
import logging
from typing import Any

import litellm

from agentloop.config import RuntimeConfig
from agentloop.errors import ModelInvocationError
from agentloop.llm.provider import LLMProvider, LLMResponse, Tool, ToolExecutor, ToolUse

logger = logging.getLogger(__name__)


def _to_openai_tools(tools: list[Tool] | None) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def _parse_arguments(raw: str | dict | None) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Model emitted non-JSON tool arguments: %.200s", raw)
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class LiteLLMProvider(LLMProvider):
    """
    LLMProvider implemented on ``litellm.acompletion``.

    Usage::

        provider = LiteLLMProvider(model="anthropic/claude-sonnet-4-20250514")
        provider = LiteLLMProvider.from_runtime_config(RuntimeConfig())
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float | None = None,
        max_tokens: int = 8192,
        **extra_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.extra_kwargs = extra_kwargs

    @classmethod
    def from_runtime_config(cls, config: RuntimeConfig) -> LiteLLMProvider:
        return cls(
            model=config.model,
            api_key=config.api_key,
            api_base=config.api_base,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    async def _acompletion(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        max_tokens: int,
    ) -> Any:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            **self.extra_kwargs,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        openai_tools = _to_openai_tools(tools)
        if openai_tools:
            kwargs["tools"] = openai_tools

        try:
            return await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ModelInvocationError(f"{self.model}: {e}") from e

    @staticmethod
    def _usage(response: Any) -> tuple[int, int]:
        usage = getattr(response, "usage", None)
        if not usage:
            return 0, 0
        return (
            getattr(usage, "prompt_tokens", 0) or 0,
            getattr(usage, "completion_tokens", 0) or 0,
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        full_messages = [{"role": "system", "content": system}] if system else []
        full_messages.extend(messages)

        response = await self._acompletion(full_messages, tools, max_tokens)
        choice = response.choices[0]
        input_tokens, output_tokens = self._usage(response)
        tool_uses = [
            ToolUse(id=tc.id, name=tc.function.name, input=_parse_arguments(tc.function.arguments))
            for tc in (choice.message.tool_calls or [])
        ]
        return LLMResponse(
            content=choice.message.content or "",
            model=getattr(response, "model", self.model) or self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=choice.finish_reason or "",
            tool_uses=tool_uses,
            raw_response=response,
        )

    async def complete_with_tools(
        self,
        messages: list[dict[str, Any]],
        system: str,
        tools: list[Tool],
        tool_executor: ToolExecutor,
        max_steps: int = 10,
    ) -> LLMResponse:
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        conversation: list[dict[str, Any]] = list(messages)
        total_input = 0
        total_output = 0
        all_tool_uses: list[ToolUse] = []
        step = 0

        while True:
            step += 1
            last = await self.complete(conversation, system, tools, self.max_tokens)
            total_input += last.input_tokens
            total_output += last.output_tokens

            if not last.tool_uses:
                break

            conversation.append(
                {
                    "role": "assistant",
                    "content": last.content or None,
                    "tool_calls": [
                        {
                            "id": tu.id,
                            "type": "function",
                            "function": {"name": tu.name, "arguments": json.dumps(tu.input)},
                        }
                        for tu in last.tool_uses
                    ],
                }
            )
            for tool_use in last.tool_uses:
                all_tool_uses.append(tool_use)
                result = await tool_executor(tool_use)
                conversation.append(
                    {"role": "tool", "tool_call_id": result.tool_use_id, "content": result.content}
                )

            if step >= max_steps:
                logger.info("Tool step limit reached (%d steps)", max_steps)
                break

        return LLMResponse(
            content=last.content,
            model=last.model,
            input_tokens=total_input,
            output_tokens=total_output,
            stop_reason=last.stop_reason,
            tool_uses=all_tool_uses,
            steps=step,
            raw_response=last.raw_response,
        )
