"""
ResearchStep - a workflow step that researches one thing with the tool call loop.

Every LCA research step has the same shape: build a request from the
step's inputs, let the reasoning model search the web for a bounded
number of rounds, extract a structured answer, and map it onto the
state fields the step declared. Only the prompts, the extraction model
and the mapping differ between steps.
"""

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel

from lcagraph.config import RuntimeConfig
from lcagraph.credentials import CredentialManager
from lcagraph.graph.errors import ExternalCallFailure
from lcagraph.graph.step import MergePolicy, OutputField, StepContext, StepProtocol, StepResult
from lcagraph.graph.tool_loop import LoopConfig, LookupTool, ToolCallLoop
from lcagraph.llm.litellm import LiteLLMProvider
from lcagraph.llm.provider import LLMProvider
from lcagraph.tools.web_search import TavilySearchTool

logger = logging.getLogger(__name__)

REFERENCE_SOURCES = "referenceSources"

# Default for entry points: build the Tavily search tool from config. None means no lookups.
DEFAULT_LOOKUP: Any = object()


def reference_sources_field() -> OutputField:
    """The shared field every research step unions its sources into."""
    return OutputField(name=REFERENCE_SOURCES, policy=MergePolicy.UNION_BY_KEY, key="url")


def product_request(inputs: Mapping[str, Any]) -> str:
    """Initial user message naming the product (and supplier, if known)."""
    request = f"Product Name: {inputs['productName']}"
    if inputs.get("supplier"):
        request += f"\nSupplier Name: {inputs['supplier']}"
    return request


def _dump_source(item: Any) -> Any:
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json")
    return dict(item) if isinstance(item, Mapping) else item


class ResearchStep(StepProtocol):
    """
    Step implementation backed by a ToolCallLoop.

    Args:
        llm: Reasoning and extraction model
        lookup: Web search (or any LookupTool); None disables lookups
        system_prompt: Instructions for the reasoning model
        extraction_prompt: Instructions for the final structured extraction
        output_model: Pydantic model the extraction must satisfy
        map_output: Turns the extracted model into the step's field updates
        build_request: Builds the first user message from the step inputs
        loop_config: Turn bound and call timeouts
    """

    def __init__(
        self,
        *,
        llm: LLMProvider,
        lookup: LookupTool | None,
        system_prompt: str,
        extraction_prompt: str,
        output_model: type[BaseModel],
        map_output: Callable[[BaseModel, Mapping[str, Any]], dict[str, Any]],
        build_request: Callable[[Mapping[str, Any]], str] = product_request,
        loop_config: LoopConfig | None = None,
    ):
        self.llm = llm
        self.lookup = lookup
        self.system_prompt = system_prompt
        self.extraction_prompt = extraction_prompt
        self.output_model = output_model
        self.map_output = map_output
        self.build_request = build_request
        self.loop_config = loop_config or LoopConfig()

    async def execute(self, ctx: StepContext) -> StepResult:
        start = time.monotonic()
        ctx.check_cancelled()

        loop = ToolCallLoop(
            self.llm,
            self.lookup,
            system_prompt=self.system_prompt,
            extraction_prompt=self.extraction_prompt,
            output_model=self.output_model,
            config=self.loop_config,
            name=ctx.step_id,
        )
        try:
            outcome = await loop.run(self.build_request(ctx.inputs), cancel_event=ctx.cancel_event)
        except ExternalCallFailure as e:
            return StepResult(
                success=False,
                error=str(e),
                cause=e,
                latency_ms=int((time.monotonic() - start) * 1000),
            )

        output = self.map_output(outcome.output, ctx.inputs)
        output[REFERENCE_SOURCES] = [_dump_source(s) for s in outcome.reference_sources]
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"[{ctx.step_id}] research finished after {outcome.tool_rounds} lookup round(s)"
            + (" (turn bound reached)" if outcome.forced else ""),
            extra={"latency_ms": latency_ms},
        )
        return StepResult(
            success=True,
            output=output,
            latency_ms=latency_ms,
            turns=outcome.tool_rounds,
        )


def default_llm(config: RuntimeConfig, credentials: CredentialManager | None = None) -> LLMProvider:
    """LiteLLM provider for the configured model, keyed from config or credentials."""
    api_key = config.api_key
    if not api_key:
        credentials = credentials or CredentialManager()
        cred_name = credentials.credential_for_model(config.model)
        if cred_name:
            api_key = credentials.get(cred_name)
    return LiteLLMProvider(
        model=config.model,
        api_key=api_key,
        api_base=config.api_base,
        temperature=config.temperature,
        timeout=config.call_timeout_seconds,
    )


def default_lookup(
    config: RuntimeConfig, credentials: CredentialManager | None = None
) -> TavilySearchTool:
    return TavilySearchTool(max_results=config.search_max_results, credentials=credentials)
