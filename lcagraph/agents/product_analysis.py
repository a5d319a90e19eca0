"""
Combined product analysis.

    START ─┬─ getBasicInfo ──────────────────────────────┐
           ├─ getSupplier ───────────────────────────────┤
           ├─ getComponent ──┐                           ├─ finalize ─ END
           └─ getTechnology ─┴─ getProcesses ─ getEmissions ┘
                                                  ↺ emission_scan

The four product research steps run concurrently. getProcesses waits for
both component and technology information. getEmissions runs once per
unit process, and finalize waits for basic info, suppliers and the whole
emission scan before assembling the ProductAnalysis.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from lcagraph.agents.base import DEFAULT_LOOKUP, REFERENCE_SOURCES, default_llm, default_lookup
from lcagraph.agents.emissions import emission_scan_router, emissions_step
from lcagraph.agents.processes import processes_step
from lcagraph.agents.product_research import (
    basic_info_step,
    component_step,
    supplier_step,
    technology_step,
)
from lcagraph.config import RuntimeConfig
from lcagraph.graph.edge import END, START, CompiledGraph, EdgeCondition, EdgeSpec, GraphSpec
from lcagraph.graph.executor import GraphExecutor
from lcagraph.graph.step import OutputField, StepSpec
from lcagraph.graph.tool_loop import LookupTool
from lcagraph.llm.provider import LLMProvider
from lcagraph.schemas.lca import ProductAnalysis

logger = logging.getLogger(__name__)

GRAPH_ID = "product-analysis"

FINALIZE_INPUTS = [
    "productName",
    "supplier",
    "productBasicInformation",
    "productComponent",
    "relatedSupplierList",
    "technologyInformation",
    "processesList",
    "emissionSources",
    "skippedProcesses",
    REFERENCE_SOURCES,
]


def finalize_results(inputs: Mapping[str, Any]) -> dict[str, Any]:
    """Assemble everything gathered into one ProductAnalysis."""
    analysis = ProductAnalysis(
        product_name=inputs["productName"],
        supplier=inputs.get("supplier"),
        product_basic_information=inputs.get("productBasicInformation") or "",
        product_component=inputs.get("productComponent") or "",
        related_supplier_list=inputs.get("relatedSupplierList") or [],
        technology_information=inputs.get("technologyInformation") or "",
        processes_list=inputs.get("processesList") or [],
        emission_sources=inputs.get("emissionSources") or [],
        reference_sources=inputs.get(REFERENCE_SOURCES) or [],
        skipped_processes=inputs.get("skippedProcesses") or [],
    )
    return {"productAnalysis": analysis.model_dump(mode="json", by_alias=True)}


def build_product_analysis_spec(
    llm: LLMProvider,
    lookup: LookupTool | None,
    config: RuntimeConfig | None = None,
    *,
    step_retries: int = 0,
    best_effort_steps: Iterable[str] = (),
) -> GraphSpec:
    """
    Declare the product analysis graph.

    Args:
        llm: Model used by every research step
        lookup: Web search shared by every research step
        config: Loop limits; defaults to RuntimeConfig()
        step_retries: Extra attempts per research step after an external call failure
        best_effort_steps: Step ids whose failure should not abort the run
    """
    config = config or RuntimeConfig()
    loop_config = config.loop_config()
    best_effort = set(best_effort_steps)

    def options(step_id: str) -> dict[str, Any]:
        return {"max_retries": step_retries, "best_effort": step_id in best_effort}

    steps = [
        basic_info_step(llm, lookup, loop_config, **options("getBasicInfo")),
        component_step(llm, lookup, loop_config, **options("getComponent")),
        supplier_step(llm, lookup, loop_config, **options("getSupplier")),
        technology_step(llm, lookup, loop_config, **options("getTechnology")),
        processes_step(
            llm,
            lookup,
            loop_config,
            prerequisites=["getComponent", "getTechnology"],
            **options("getProcesses"),
        ),
        emissions_step(
            llm, lookup, loop_config, prerequisites=["getProcesses"], **options("getEmissions")
        ),
        StepSpec(
            id="finalize",
            name="Finalize results",
            work=finalize_results,
            input_keys=FINALIZE_INPUTS,
            output_fields=[OutputField(name="productAnalysis")],
            prerequisites=["getBasicInfo", "getSupplier", "getEmissions"],
        ),
    ]

    edges = [
        EdgeSpec(source=START, target="getBasicInfo"),
        EdgeSpec(source=START, target="getComponent"),
        EdgeSpec(source=START, target="getSupplier"),
        EdgeSpec(source=START, target="getTechnology"),
        EdgeSpec(source="getComponent", target="getProcesses"),
        EdgeSpec(source="getTechnology", target="getProcesses"),
        EdgeSpec(source="getProcesses", target="getEmissions"),
        EdgeSpec(
            source="getEmissions",
            condition=EdgeCondition.CONDITIONAL,
            router=emission_scan_router("finalize"),
        ),
        EdgeSpec(source="getBasicInfo", target="finalize"),
        EdgeSpec(source="getSupplier", target="finalize"),
        EdgeSpec(source="finalize", target=END),
    ]

    return GraphSpec(
        id=GRAPH_ID,
        entry_step=START,
        steps=steps,
        edges=edges,
        description="Gather LCA data for a product: information, processes and emissions",
    )


def build_product_analysis_graph(
    llm: LLMProvider,
    lookup: LookupTool | None,
    config: RuntimeConfig | None = None,
    **kwargs: Any,
) -> CompiledGraph:
    """Declare and compile the product analysis graph."""
    return build_product_analysis_spec(llm, lookup, config, **kwargs).compile()


async def analyze_product(
    product_name: str,
    supplier: str | None = None,
    *,
    llm: LLMProvider | None = None,
    lookup: LookupTool | None = DEFAULT_LOOKUP,
    config: RuntimeConfig | None = None,
    cancel_event: asyncio.Event | None = None,
    **graph_kwargs: Any,
) -> ProductAnalysis:
    """
    Run the full analysis for one product.

    Research steps search the web with the configured Tavily tool unless
    another lookup is given; lookup=None runs them on reasoning alone.

    Example:
        analysis = await analyze_product("Solar Panel", "Suntech Power")
        for process in analysis.processes_list:
            print(process.process_name)

    Raises:
        StepFailed: A research step failed (and was not best-effort)
        WorkflowCancelled: cancel_event was set
        IncompleteWorkflow: The graph stalled
    """
    config = config or RuntimeConfig()
    llm = llm or default_llm(config)
    if lookup is DEFAULT_LOOKUP:
        lookup = default_lookup(config)

    graph = build_product_analysis_graph(llm, lookup, config, **graph_kwargs)
    logger.info(
        f"Analyzing product '{product_name}'" + (f" from '{supplier}'" if supplier else "")
    )
    result = await GraphExecutor().execute(
        graph,
        {"productName": product_name, "supplier": supplier, "currentProcessIndex": 0},
        cancel_event=cancel_event,
    )

    analysis = ProductAnalysis.model_validate(result.state["productAnalysis"])
    incomplete = set(result.failed_steps)
    if analysis.skipped_processes:
        incomplete.add("getEmissions")
    if incomplete:
        analysis = analysis.model_copy(update={"incomplete_steps": sorted(incomplete)})
    return analysis
