"""Shared lcagraph configuration utilities.

Reads the optional ~/.lcagraph/configuration.json so the CLI and library
callers agree on which model, endpoint and loop limits to use:

    {
      "llm": {"provider": "openai", "model": "qwen-plus",
              "api_base": "https://dashscope.aliyuncs.com/compatible-mode/v1",
              "api_key_env_var": "DASHSCOPE_API_KEY", "max_tokens": 2048},
      "loop": {"max_turns": 10, "call_timeout_seconds": 60},
      "search": {"max_results": 5}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lcagraph.graph.tool_loop import DEFAULT_MAX_TURNS, LoopConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

LCAGRAPH_CONFIG_FILE = Path.home() / ".lcagraph" / "configuration.json"

DEFAULT_MODEL = "openai/qwen-plus"
DASHSCOPE_API_BASE = "https://dashscope.aliyuncs.com/compatible-mode/v1"
DEFAULT_MAX_TOKENS = 2048
DEFAULT_SEARCH_RESULTS = 5


def get_lcagraph_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.lcagraph/configuration.json (empty if absent)."""
    config_file = path or LCAGRAPH_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Return the configured model string (e.g. 'openai/qwen-plus')."""
    llm = get_lcagraph_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_api_base() -> str | None:
    """Return the configured endpoint. The default model talks to DashScope."""
    llm = get_lcagraph_config().get("llm", {})
    if "api_base" in llm:
        return llm["api_base"] or None
    if get_preferred_model() == DEFAULT_MODEL:
        return DASHSCOPE_API_BASE
    return None


def get_max_tokens() -> int:
    return get_lcagraph_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_lcagraph_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_max_turns() -> int:
    return get_lcagraph_config().get("loop", {}).get("max_turns", DEFAULT_MAX_TURNS)


def get_call_timeout() -> float:
    return float(get_lcagraph_config().get("loop", {}).get("call_timeout_seconds", 60.0))


def get_search_max_results() -> int:
    return get_lcagraph_config().get("search", {}).get("max_results", DEFAULT_SEARCH_RESULTS)


# ---------------------------------------------------------------------------
# RuntimeConfig
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Runtime configuration loaded from ~/.lcagraph/configuration.json."""

    model: str = field(default_factory=get_preferred_model)
    api_base: str | None = field(default_factory=get_api_base)
    api_key: str | None = field(default_factory=get_api_key)
    temperature: float = 0.0
    max_tokens: int = field(default_factory=get_max_tokens)
    max_turns: int = field(default_factory=get_max_turns)
    call_timeout_seconds: float = field(default_factory=get_call_timeout)
    search_max_results: int = field(default_factory=get_search_max_results)

    def loop_config(self) -> LoopConfig:
        """Loop limits for every research step."""
        return LoopConfig(
            max_turns=self.max_turns,
            call_timeout_seconds=self.call_timeout_seconds,
            max_tokens=self.max_tokens,
            extraction_max_tokens=self.max_tokens,
        )
