"""LLM provider abstraction."""

from lcagraph.llm.litellm import LiteLLMProvider
from lcagraph.llm.provider import LLMProvider, LLMResponse, Tool, ToolUse

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "Tool",
    "ToolUse",
]
