"""LiteLLM provider - one interface for OpenAI-compatible, DashScope, Anthropic and others."""

import json
import logging
from typing import Any

import litellm

from lcagraph.graph.errors import ExternalCallFailure
from lcagraph.llm.provider import LLMProvider, LLMResponse, Tool, ToolUse

logger = logging.getLogger(__name__)


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Tool call arguments are not valid JSON: {raw!r}")
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": parsed}


class LiteLLMProvider(LLMProvider):
    """
    LLM provider backed by litellm.acompletion.

    Example:
        llm = LiteLLMProvider(
            model="openai/qwen-plus",
            api_base="https://dashscope.aliyuncs.com/compatible-mode/v1",
            api_key=os.environ["DASHSCOPE_API_KEY"],
        )
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float = 0.0,
        timeout: float | None = None,
        **extra_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self.timeout = timeout
        self.extra_kwargs = extra_kwargs

    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
        response_format: dict[str, Any] | None = None,
    ) -> LLMResponse:
        full_messages = list(messages)
        if system:
            full_messages.insert(0, {"role": "system", "content": system})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
            **self.extra_kwargs,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.timeout:
            kwargs["timeout"] = self.timeout
        if tools:
            kwargs["tools"] = [tool.to_openai() for tool in tools]
        if response_format:
            kwargs["response_format"] = response_format

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ExternalCallFailure(
                f"LLM call to {self.model} failed: {e}", call="llm", cause=e
            ) from e

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolUse(
                id=tc.id or f"call_{i}",
                name=tc.function.name,
                input=_parse_arguments(tc.function.arguments),
            )
            for i, tc in enumerate(getattr(message, "tool_calls", None) or [])
        ]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=message.content or "",
            model=getattr(response, "model", None) or self.model,
            tool_calls=tool_calls,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )
