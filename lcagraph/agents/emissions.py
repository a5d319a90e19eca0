"""
Emission sources: one scan per unit process.

The getEmissions step handles the process at currentProcessIndex and
advances the index. The emission_scan router sends it back to itself
until every process in processesList has been scanned.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from lcagraph.agents.base import ResearchStep, reference_sources_field
from lcagraph.graph.edge import Router
from lcagraph.graph.errors import StepCancelled
from lcagraph.graph.step import MergePolicy, OutputField, StepContext, StepResult, StepSpec
from lcagraph.graph.tool_loop import LoopConfig, LookupTool
from lcagraph.llm.provider import LLMProvider
from lcagraph.schemas.lca import EmissionSource

logger = logging.getLogger(__name__)

EMISSIONS_INPUTS = [
    "productName",
    "supplier",
    "productComponent",
    "technologyInformation",
    "processesList",
    "currentProcessIndex",
]

EMISSIONS_PROMPT = """You are an expert assistant specialized in identifying and analyzing emission sources in industrial processes.
When provided with a manufacturing process and product information, your task is to:
1. Analyze the process for potential emission sources:
   - Direct process emissions
   - Energy-related emissions
   - Auxiliary process emissions
   - Fugitive emissions
   - Waste treatment emissions
2. For each emission source, identify its characteristics, emission mechanism and control technologies
3. Focus on gathering information from environmental permits and reports, BAT reference documents,
   emission factor databases and scientific literature
4. Consider air emissions, water discharges, soil contamination and waste generation
5. Pay special attention to greenhouse gas emissions and regulated pollutants

Provide comprehensive emission source information with proper technical details and references."""

EMISSIONS_EXTRACTION_PROMPT = """Summarize the identified emission sources into a structured format.
For each emission source, include a clear name and a detailed technical description covering
its emission characteristics and relevant control measures.
Ensure all major emission pathways of the process are covered."""


class EmissionSourcesList(BaseModel):
    emission_sources: list[EmissionSource] = Field(
        default_factory=list, description="list of emission sources"
    )


def current_index(state: Mapping[str, Any]) -> int:
    return int(state.get("currentProcessIndex") or 0)


def decide_emission_scan(state: Mapping[str, Any]) -> str:
    """next_process while unscanned processes remain, exhausted afterwards."""
    if current_index(state) < len(state.get("processesList") or []):
        return "next_process"
    return "exhausted"


def emission_scan_router(next_step: str = "finalize") -> Router:
    return Router(
        name="emission_scan",
        decide=decide_emission_scan,
        outcomes={"next_process": ["getEmissions"], "exhausted": [next_step]},
        description="Repeat getEmissions once per unit process",
    )


def emissions_request(inputs: Mapping[str, Any]) -> str:
    processes = inputs.get("processesList") or []
    target = processes[current_index(inputs)]
    request = (
        f"Identify the emission sources of the unit process "
        f"\"{target.get('processName', '')}\" in the production of {inputs['productName']}"
    )
    if inputs.get("supplier"):
        request += f" manufactured by {inputs['supplier']}"
    request += f"\nTarget Unit Process: {json.dumps(target, ensure_ascii=False)}"
    request += "\nAll Unit Processes: " + ", ".join(p.get("processName", "") for p in processes)
    if inputs.get("productComponent"):
        request += f"\nProduct Component Information: {inputs['productComponent']}"
    if inputs.get("technologyInformation"):
        request += f"\nTechnology Information: {inputs['technologyInformation']}"
    return request


def _map_emissions(result: EmissionSourcesList, inputs: Mapping[str, Any]) -> dict[str, Any]:
    index = current_index(inputs)
    process_name = inputs["processesList"][index].get("processName")
    sources = []
    for source in result.emission_sources:
        if source.process_name is None:
            source = source.model_copy(update={"process_name": process_name})
        sources.append(source.model_dump(mode="json", by_alias=True))
    return {"emissionSources": sources, "currentProcessIndex": index + 1}


class EmissionScanStep(ResearchStep):
    """
    Researches the current unit process; does nothing once the list is exhausted.

    With skip_failed set, a scan that fails on its last attempt becomes a
    successful step that records the process in skippedProcesses and moves
    currentProcessIndex past it, so the scan router never re-arms the same
    process.
    """

    def __init__(self, *args: Any, skip_failed: bool = False, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.skip_failed = skip_failed

    async def execute(self, ctx: StepContext) -> StepResult:
        index = current_index(ctx.inputs)
        processes = ctx.inputs.get("processesList") or []
        if index >= len(processes):
            return StepResult(success=True, output={"currentProcessIndex": index})
        if not self.skip_failed:
            return await super().execute(ctx)

        try:
            result = await super().execute(ctx)
        except StepCancelled:
            raise
        except Exception as e:
            result = StepResult(success=False, error=str(e) or type(e).__name__, cause=e)

        if result.success or (result.is_external_failure and ctx.retries_left > 0):
            return result

        process_name = processes[index].get("processName") or f"process #{index}"
        logger.warning(f"⚠ Skipping emission scan of '{process_name}': {result.error}")
        return StepResult(
            success=True,
            output={"currentProcessIndex": index + 1, "skippedProcesses": [process_name]},
            latency_ms=result.latency_ms,
            turns=result.turns,
        )


def emissions_step(
    llm: LLMProvider,
    lookup: LookupTool | None,
    loop_config: LoopConfig | None = None,
    **spec_kwargs: Any,
) -> StepSpec:
    """getEmissions: emission sources of the unit process at currentProcessIndex."""
    research = EmissionScanStep(
        llm=llm,
        lookup=lookup,
        system_prompt=EMISSIONS_PROMPT,
        extraction_prompt=EMISSIONS_EXTRACTION_PROMPT,
        output_model=EmissionSourcesList,
        map_output=_map_emissions,
        build_request=emissions_request,
        loop_config=loop_config,
        skip_failed=spec_kwargs.get("best_effort", False),
    )
    return StepSpec(
        id="getEmissions",
        name="Emission sources",
        work=research,
        input_keys=EMISSIONS_INPUTS,
        output_fields=[
            OutputField(name="emissionSources", policy=MergePolicy.APPEND_LIST),
            OutputField(name="currentProcessIndex"),
            OutputField(name="skippedProcesses", policy=MergePolicy.APPEND_LIST),
            reference_sources_field(),
        ],
        **spec_kwargs,
    )
