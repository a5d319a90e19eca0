"""ToolCallLoop: bounded reasoning / lookup cycle that ends in one structured extraction.

Every research step follows the same pattern:
1. AWAITING_MODEL: call the reasoning model with the turns gathered so far
2. DECIDING: finalize if the model asked for no lookups or the turn bound
   is reached, otherwise invoke the requested lookups
3. INVOKING_TOOL: run the lookups, append their results as new turns,
   bump the turn counter and go back to the model
4. FINALIZING: one extraction call over the whole transcript produces the
   step's structured output; the items of the most recent successful lookup
   become the step's reference sources

The turn bound only ever shortens a loop. Reaching it forces finalization
with whatever has been gathered; it is never an error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from lcagraph.graph.errors import ExternalCallFailure, StepCancelled
from lcagraph.llm.provider import LLMProvider, LLMResponse, Tool, ToolUse

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_TURNS = 10


class LoopPhase(StrEnum):
    AWAITING_MODEL = "awaiting_model"
    DECIDING = "deciding"
    INVOKING_TOOL = "invoking_tool"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class LoopConfig:
    """Configuration for the tool call loop."""

    max_turns: int = DEFAULT_MAX_TURNS
    call_timeout_seconds: float = 60.0
    max_tokens: int = 2048
    extraction_max_tokens: int = 2048


@runtime_checkable
class LookupTool(Protocol):
    """An external lookup the reasoning model can ask for."""

    @property
    def tool(self) -> Tool: ...

    async def lookup(self, query: str) -> list[Any]: ...


@dataclass
class LoopTurn:
    """One exchanged message."""

    role: Literal["user", "assistant", "tool"]
    content: str = ""
    tool_calls: list[ToolUse] = field(default_factory=list)
    tool_use_id: str | None = None
    items: list[Any] = field(default_factory=list)
    is_error: bool = False

    def to_message(self) -> dict[str, Any]:
        if self.role == "tool":
            return {"role": "tool", "tool_call_id": self.tool_use_id, "content": self.content}
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.input)},
                }
                for call in self.tool_calls
            ]
        return message


@dataclass
class LoopOutcome:
    """Result of a finished loop."""

    output: BaseModel
    reference_sources: list[Any]
    turns: list[LoopTurn]
    tool_rounds: int
    forced: bool = False


def _dump_item(item: Any) -> Any:
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json")
    return item


def parse_json_object(text: str) -> dict[str, Any]:
    """Pull a JSON object out of model text, tolerating code fences and chatter."""
    cleaned = text.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        data = json.loads(cleaned[start : end + 1])
    if not isinstance(data, dict):
        raise json.JSONDecodeError("expected a JSON object", cleaned, 0)
    return data


class ToolCallLoop:
    """
    Reusable tool-call state machine, parameterized per step.

    Example:
        loop = ToolCallLoop(
            llm=llm,
            lookup=search,
            system_prompt="You research product compositions...",
            extraction_prompt="Summarize the component information.",
            output_model=ComponentInfo,
        )
        outcome = await loop.run("Analyze the product 'Solar Panel'")
    """

    def __init__(
        self,
        llm: LLMProvider,
        lookup: LookupTool | None,
        *,
        system_prompt: str,
        extraction_prompt: str,
        output_model: type[BaseModel],
        config: LoopConfig | None = None,
        name: str = "",
    ):
        self.llm = llm
        self.lookup = lookup
        self.system_prompt = system_prompt
        self.extraction_prompt = extraction_prompt
        self.output_model = output_model
        self.config = config or LoopConfig()
        self.name = name or output_model.__name__

    async def _bounded(self, call: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.call_timeout_seconds)
        except TimeoutError as e:
            raise ExternalCallFailure(
                f"{call} call timed out after {self.config.call_timeout_seconds}s",
                call=call,
                cause=e,
            ) from e

    async def run(
        self,
        request: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> LoopOutcome:
        """
        Drive the loop to completion.

        Args:
            request: Initial user message describing what to research
            cancel_event: Checked before every reasoning call

        Raises:
            ExternalCallFailure: If a reasoning or extraction call fails
            StepCancelled: If cancel_event was set at a turn boundary
        """
        turns = [LoopTurn(role="user", content=request)]
        tools = [self.lookup.tool] if self.lookup is not None else None
        tool_rounds = 0
        forced = False
        last_items: list[Any] = []
        response: LLMResponse | None = None
        output: BaseModel | None = None
        phase = LoopPhase.AWAITING_MODEL

        while phase != LoopPhase.DONE:
            if phase == LoopPhase.AWAITING_MODEL:
                if cancel_event is not None and cancel_event.is_set():
                    raise StepCancelled(self.name)
                response = await self._bounded(
                    "reasoning",
                    self.llm.acomplete(
                        messages=[t.to_message() for t in turns],
                        system=self.system_prompt,
                        tools=tools,
                        max_tokens=self.config.max_tokens,
                    ),
                )
                turns.append(
                    LoopTurn(
                        role="assistant",
                        content=response.content,
                        tool_calls=list(response.tool_calls),
                    )
                )
                phase = LoopPhase.DECIDING

            elif phase == LoopPhase.DECIDING:
                if not response.tool_calls or self.lookup is None:
                    phase = LoopPhase.FINALIZING
                elif tool_rounds >= self.config.max_turns:
                    logger.info(
                        f"[{self.name}] turn bound {self.config.max_turns} reached, finalizing"
                    )
                    forced = True
                    phase = LoopPhase.FINALIZING
                else:
                    phase = LoopPhase.INVOKING_TOOL

            elif phase == LoopPhase.INVOKING_TOOL:
                for call in response.tool_calls:
                    turn = await self._invoke(call)
                    turns.append(turn)
                    if not turn.is_error:
                        last_items = turn.items
                tool_rounds += 1
                logger.debug(f"[{self.name}] lookup round {tool_rounds} complete")
                phase = LoopPhase.AWAITING_MODEL

            elif phase == LoopPhase.FINALIZING:
                output = await self._extract(turns)
                phase = LoopPhase.DONE

        return LoopOutcome(
            output=output,
            reference_sources=list(last_items),
            turns=turns,
            tool_rounds=tool_rounds,
            forced=forced,
        )

    async def _invoke(self, call: ToolUse) -> LoopTurn:
        """Run one lookup. Failures become error results for the model to see."""
        if call.name != self.lookup.tool.name:
            return LoopTurn(
                role="tool",
                tool_use_id=call.id,
                content=f"Unknown tool '{call.name}'",
                is_error=True,
            )
        query = str(call.input.get("query", "")).strip()
        if not query:
            return LoopTurn(
                role="tool", tool_use_id=call.id, content="Missing 'query'", is_error=True
            )
        try:
            items = await self._bounded("lookup", self.lookup.lookup(query))
        except ExternalCallFailure as e:
            logger.warning(f"[{self.name}] lookup failed for {query!r}: {e}")
            return LoopTurn(
                role="tool", tool_use_id=call.id, content=f"Lookup failed: {e}", is_error=True
            )
        return LoopTurn(
            role="tool",
            tool_use_id=call.id,
            content=json.dumps([_dump_item(i) for i in items], default=str),
            items=list(items),
        )

    def _render_transcript(self, turns: list[LoopTurn]) -> str:
        parts = []
        for turn in turns:
            if turn.role == "tool":
                label = "Lookup error" if turn.is_error else "Lookup result"
                parts.append(f"{label}:\n{turn.content}")
            elif turn.content:
                parts.append(f"{turn.role.capitalize()}:\n{turn.content}")
        return "\n\n".join(parts)

    async def _extract(self, turns: list[LoopTurn]) -> BaseModel:
        schema = json.dumps(self.output_model.model_json_schema())
        system = (
            f"{self.extraction_prompt}\n\n"
            f"Respond with a single JSON object matching this JSON schema:\n{schema}"
        )
        response = await self._bounded(
            "extraction",
            self.llm.acomplete(
                messages=[{"role": "user", "content": self._render_transcript(turns)}],
                system=system,
                max_tokens=self.config.extraction_max_tokens,
                response_format={"type": "json_object"},
            ),
        )
        try:
            return self.output_model.model_validate(parse_json_object(response.content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise ExternalCallFailure(
                f"extraction returned output that does not match {self.output_model.__name__}",
                call="extraction",
                cause=e,
            ) from e
