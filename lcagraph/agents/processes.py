"""
Processes list: the ordered unit processes that make up a product's production.

Usable as the getProcesses step of the product analysis graph, or on its
own through build_processes_list().
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from lcagraph.agents.base import (
    DEFAULT_LOOKUP,
    REFERENCE_SOURCES,
    ResearchStep,
    default_llm,
    default_lookup,
    reference_sources_field,
)
from lcagraph.config import RuntimeConfig
from lcagraph.graph.edge import END, START, EdgeSpec, compile_graph
from lcagraph.graph.executor import GraphExecutor
from lcagraph.graph.step import OutputField, StepSpec
from lcagraph.graph.tool_loop import LoopConfig, LookupTool
from lcagraph.llm.provider import LLMProvider
from lcagraph.schemas.lca import ReferenceSource, UnitProcess

logger = logging.getLogger(__name__)

PROCESSES_INPUTS = ["productName", "supplier", "productComponent", "technologyInformation"]

PROCESSES_PROMPT = """You are an expert assistant specialized in analyzing and extracting detailed production processes for manufactured products.
When provided with a product name and supplier, your task is to:
1. First search the supplier's official website, focusing on technical documentation, product specifications, and manufacturing details
2. If supplier information is insufficient, expand your search to:
   - Industry databases and technical repositories
   - Academic papers and patents
   - Manufacturing standards and guidelines
   - Trade publications and industry reports
3. For each search iteration:
   - Prioritize authoritative and technical sources
   - Focus on step-by-step manufacturing procedures
   - Include key production parameters when available
4. Compile findings into a clear, chronological production workflow
5. Include direct source links for each major process step identified

If initial searches don't yield sufficient detail, refine your queries using industry-specific terminology."""

PROCESSES_EXTRACTION_PROMPT = (
    "Summarize the extracted production process into a structured, chronological list "
    "of unit processes."
)


class ProcessesList(BaseModel):
    processes_list: list[UnitProcess] = Field(
        default_factory=list, description="chronological list of unit processes"
    )


class ProcessesListResult(BaseModel):
    """Result of a standalone processes list build."""

    processes_list: list[UnitProcess] = Field(default_factory=list, alias="processesList")
    reference_sources: list[ReferenceSource] = Field(
        default_factory=list, alias="referenceSources"
    )

    model_config = {"populate_by_name": True}


def processes_request(inputs: Mapping[str, Any]) -> str:
    prompt = f"Please analyze and extract the detailed production processes for {inputs['productName']}"
    if inputs.get("supplier"):
        prompt += f" manufactured by {inputs['supplier']}"
    if inputs.get("productComponent"):
        prompt += f"\nProduct Component Information: {inputs['productComponent']}"
    if inputs.get("technologyInformation"):
        prompt += f"\nTechnology Information: {inputs['technologyInformation']}"
    return prompt


def _map_processes(result: ProcessesList, _inputs: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "processesList": [
            process.model_dump(mode="json", by_alias=True) for process in result.processes_list
        ]
    }


def processes_step(
    llm: LLMProvider,
    lookup: LookupTool | None,
    loop_config: LoopConfig | None = None,
    **spec_kwargs: Any,
) -> StepSpec:
    """getProcesses: unit processes of the product, in production order."""
    research = ResearchStep(
        llm=llm,
        lookup=lookup,
        system_prompt=PROCESSES_PROMPT,
        extraction_prompt=PROCESSES_EXTRACTION_PROMPT,
        output_model=ProcessesList,
        map_output=_map_processes,
        build_request=processes_request,
        loop_config=loop_config,
    )
    return StepSpec(
        id="getProcesses",
        name="Processes list",
        work=research,
        input_keys=PROCESSES_INPUTS,
        output_fields=[OutputField(name="processesList"), reference_sources_field()],
        **spec_kwargs,
    )


async def build_processes_list(
    product_name: str,
    supplier: str | None = None,
    product_component: str | None = None,
    technology_information: str | None = None,
    *,
    llm: LLMProvider | None = None,
    lookup: LookupTool | None = DEFAULT_LOOKUP,
    config: RuntimeConfig | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ProcessesListResult:
    """
    Build the processes list for one product.

    lookup=None skips web search and relies on the model alone.

    Raises:
        StepFailed: If the reasoning or extraction call failed
        WorkflowCancelled: If cancel_event was set
    """
    config = config or RuntimeConfig()
    llm = llm or default_llm(config)
    if lookup is DEFAULT_LOOKUP:
        lookup = default_lookup(config)

    graph = compile_graph(
        steps=[processes_step(llm, lookup, config.loop_config())],
        edges=[
            EdgeSpec(source=START, target="getProcesses"),
            EdgeSpec(source="getProcesses", target=END),
        ],
        graph_id="processes-list",
    )
    result = await GraphExecutor().execute(
        graph,
        {
            "productName": product_name,
            "supplier": supplier,
            "productComponent": product_component,
            "technologyInformation": technology_information,
        },
        cancel_event=cancel_event,
    )
    logger.info(
        f"Built {len(result.state.get('processesList', []))} unit process(es) for {product_name}"
    )
    return ProcessesListResult(
        processes_list=result.state.get("processesList", []),
        reference_sources=result.state.get(REFERENCE_SOURCES, []),
    )
