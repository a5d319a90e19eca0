"""
Step Protocol - The building block of a workflow graph.

A step is a named unit of work. It receives a read-only snapshot of the
fields it declared as inputs and returns a partial update for the fields
it declared as outputs. Steps never hold a reference to the shared state:
everything they contribute travels through their StepResult.

Each declared output field carries a merge policy that tells the reducer
how concurrent contributions combine:
- overwrite: replace the current value (last completed writer wins)
- append_list: concatenate contributions in completion order
- union_by_key: merge items, deduplicating by a declared key
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from lcagraph.graph.errors import ExternalCallFailure, StepCancelled

logger = logging.getLogger(__name__)


class MergePolicy(StrEnum):
    """How a field combines contributions from several steps."""

    OVERWRITE = "overwrite"
    APPEND_LIST = "append_list"
    UNION_BY_KEY = "union_by_key"


class OutputField(BaseModel):
    """
    Declaration of one field a step writes.

    Examples:
        OutputField(name="processesList")
        OutputField(name="emissionSources", policy=MergePolicy.APPEND_LIST)
        OutputField(name="referenceSources", policy=MergePolicy.UNION_BY_KEY, key="url")
    """

    name: str
    policy: MergePolicy = MergePolicy.OVERWRITE
    key: str | None = Field(default=None, description="Dedup key for union_by_key fields")
    optional: bool = Field(
        default=False,
        description="A failed writer leaves this field absent instead of failing the run",
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _key_required_for_union(self) -> "OutputField":
        if self.policy == MergePolicy.UNION_BY_KEY and not self.key:
            raise ValueError(f"union_by_key field '{self.name}' must declare a key")
        return self


@dataclass(frozen=True)
class StepContext:
    """Everything a step gets to see while it runs."""

    step_id: str
    inputs: Mapping[str, Any]
    run_id: str = ""
    visit: int = 1
    cancel_event: asyncio.Event | None = None
    retries_left: int = 0  # Attempts still allowed after an external call failure

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise StepCancelled if the run has been cancelled."""
        if self.cancelled:
            raise StepCancelled(self.step_id)


@dataclass
class StepResult:
    """Outcome of one step invocation."""

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    cause: BaseException | None = None
    latency_ms: int = 0
    turns: int = 0

    @property
    def is_external_failure(self) -> bool:
        return isinstance(self.cause, ExternalCallFailure)


class StepProtocol(ABC):
    """Interface every step implementation follows."""

    @abstractmethod
    async def execute(self, ctx: StepContext) -> StepResult:
        """Run the step against its input snapshot."""


class FunctionStep(StepProtocol):
    """
    Adapts a plain function into a step.

    The function receives the read-only input mapping and returns a dict
    (or None for no output). Both sync and async functions are accepted.
    """

    def __init__(self, func: Callable[[Mapping[str, Any]], Any]):
        self.func = func

    async def execute(self, ctx: StepContext) -> StepResult:
        start = time.monotonic()
        try:
            output = self.func(ctx.inputs)
            if inspect.isawaitable(output):
                output = await output
        except (StepCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.warning(f"Step '{ctx.step_id}' raised {type(e).__name__}: {e}")
            return StepResult(
                success=False,
                error=str(e) or type(e).__name__,
                cause=e,
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        if output is None:
            output = {}
        if not isinstance(output, Mapping):
            return StepResult(
                success=False,
                error=f"expected a mapping of field updates, got {type(output).__name__}",
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        return StepResult(
            success=True,
            output=dict(output),
            latency_ms=int((time.monotonic() - start) * 1000),
        )


class StepSpec(BaseModel):
    """
    Specification for a step in the graph.

    Examples:
        StepSpec(
            id="getProcesses",
            name="Build processes list",
            work=processes_step,
            input_keys=["productName", "productComponent", "technologyInformation"],
            output_fields=[
                OutputField(name="processesList"),
                OutputField(name="referenceSources", policy="union_by_key", key="url"),
            ],
            prerequisites=["getComponent", "getTechnology"],
        )
    """

    id: str
    name: str = ""
    description: str = ""

    work: Any = Field(default=None, exclude=True, description="StepProtocol or callable")

    input_keys: list[str] = Field(default_factory=list)
    output_fields: list[OutputField] = Field(default_factory=list)
    prerequisites: list[str] = Field(
        default_factory=list, description="Steps that must complete before this one starts"
    )

    # Retry policy: extra attempts after an ExternalCallFailure
    max_retries: int = Field(default=0, ge=0)
    best_effort: bool = Field(
        default=False, description="A failure contributes nothing and the run continues"
    )

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("step id cannot be empty")
        return value

    @property
    def output_keys(self) -> list[str]:
        return [f.name for f in self.output_fields]

    @property
    def tolerates_failure(self) -> bool:
        """True if a failure of this step should not abort the run."""
        if self.best_effort:
            return True
        return bool(self.output_fields) and all(f.optional for f in self.output_fields)

    def get_field(self, name: str) -> OutputField | None:
        for output_field in self.output_fields:
            if output_field.name == name:
                return output_field
        return None

    def implementation(self) -> StepProtocol | None:
        """Return the work as a StepProtocol, wrapping plain callables."""
        if self.work is None:
            return None
        if isinstance(self.work, StepProtocol):
            return self.work
        if callable(self.work):
            return FunctionStep(self.work)
        return None
