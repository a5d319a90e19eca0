"""
Credential management for the LLM endpoint and the search API.

Values are resolved from, in order: test overrides, os.environ, and the
.env file in the working directory (read fresh on every lookup).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values


@dataclass
class CredentialSpec:
    """Specification for a single credential."""

    env_var: str
    """Environment variable name (e.g., 'TAVILY_API_KEY')"""

    tools: list[str] = field(default_factory=list)
    """Tool names that require this credential (e.g., ['web_search'])"""

    models: list[str] = field(default_factory=list)
    """Model prefixes that require this credential (e.g., ['openai/'])"""

    required: bool = True
    help_url: str = ""
    description: str = ""


CREDENTIAL_SPECS: dict[str, CredentialSpec] = {
    "dashscope": CredentialSpec(
        env_var="DASHSCOPE_API_KEY",
        models=["openai/qwen"],
        help_url="https://dashscope.console.aliyun.com/apiKey",
        description="API key for the DashScope (Qwen) OpenAI-compatible endpoint",
    ),
    "openai": CredentialSpec(
        env_var="OPENAI_API_KEY",
        models=["openai/gpt", "gpt-"],
        help_url="https://platform.openai.com/api-keys",
        description="API key for OpenAI models",
    ),
    "tavily": CredentialSpec(
        env_var="TAVILY_API_KEY",
        tools=["web_search"],
        help_url="https://app.tavily.com/",
        description="API key for Tavily web search",
    ),
}


class CredentialError(Exception):
    """Raised when required credentials are missing."""


class CredentialManager:
    """
    Looks up credentials by logical name and checks what a run needs.

    Usage:
        creds = CredentialManager()
        creds.validate(tools=["web_search"], model="openai/qwen-plus")
        api_key = creds.get("tavily")

        # Testing
        creds = CredentialManager.for_testing({"tavily": "test-key"})
    """

    def __init__(
        self,
        specs: dict[str, CredentialSpec] | None = None,
        _overrides: dict[str, str] | None = None,
        dotenv_path: Path | None = None,
    ):
        self._specs = specs if specs is not None else CREDENTIAL_SPECS
        self._overrides = _overrides or {}
        self._dotenv_path = dotenv_path
        self._tool_to_cred: dict[str, str] = {}
        for cred_name, spec in self._specs.items():
            for tool_name in spec.tools:
                self._tool_to_cred[tool_name] = cred_name

    @classmethod
    def for_testing(
        cls,
        overrides: dict[str, str],
        specs: dict[str, CredentialSpec] | None = None,
        dotenv_path: Path | None = None,
    ) -> CredentialManager:
        """Create a manager with injected values (pass a missing dotenv_path to isolate)."""
        return cls(specs=specs, _overrides=overrides, dotenv_path=dotenv_path)

    def _get_raw(self, name: str) -> str | None:
        if name in self._overrides:
            return self._overrides[name]

        spec = self._specs[name]
        env_value = os.environ.get(spec.env_var)
        if env_value:
            return env_value

        dotenv_path = self._dotenv_path or Path.cwd() / ".env"
        if not dotenv_path.exists():
            return None
        return dotenv_values(dotenv_path).get(spec.env_var)

    def get(self, name: str) -> str | None:
        """
        Get a credential value by logical name.

        Raises:
            KeyError: If the credential name is unknown
        """
        if name not in self._specs:
            raise KeyError(f"Unknown credential '{name}'. Available: {list(self._specs)}")
        return self._get_raw(name)

    def get_spec(self, name: str) -> CredentialSpec:
        if name not in self._specs:
            raise KeyError(f"Unknown credential '{name}'")
        return self._specs[name]

    def is_available(self, name: str) -> bool:
        value = self.get(name)
        return value is not None and value != ""

    def credential_for_model(self, model: str) -> str | None:
        """Credential name a model string needs, if any."""
        for cred_name, spec in self._specs.items():
            if any(model.startswith(prefix) for prefix in spec.models):
                return cred_name
        return None

    def get_missing(
        self, tools: list[str] | None = None, model: str | None = None
    ) -> list[tuple[str, CredentialSpec]]:
        """Missing required credentials for the given tools and model."""
        needed: list[str] = []
        for tool_name in tools or []:
            cred_name = self._tool_to_cred.get(tool_name)
            if cred_name and cred_name not in needed:
                needed.append(cred_name)
        if model:
            cred_name = self.credential_for_model(model)
            if cred_name and cred_name not in needed:
                needed.append(cred_name)

        return [
            (name, self._specs[name])
            for name in needed
            if self._specs[name].required and not self.is_available(name)
        ]

    def validate(self, tools: list[str] | None = None, model: str | None = None) -> None:
        """
        Check that every credential the run needs is present.

        Raises:
            CredentialError: With an actionable message listing what is missing
        """
        missing = self.get_missing(tools, model)
        if missing:
            raise CredentialError(self._format_missing_error(missing))

    def _format_missing_error(self, missing: list[tuple[str, CredentialSpec]]) -> str:
        lines = ["Cannot run analysis: Missing credentials\n"]
        for _cred_name, spec in missing:
            lines.append(f"  {spec.env_var}")
            if spec.description:
                lines.append(f"    {spec.description}")
            if spec.help_url:
                lines.append(f"    Get an API key at: {spec.help_url}")
            lines.append(f"    Set via: export {spec.env_var}=your_key")
            lines.append("")
        lines.append("Set these environment variables (or add them to .env) and re-run.")
        return "\n".join(lines)
