"""LCA research steps and the combined product analysis workflow."""

from lcagraph.agents.base import DEFAULT_LOOKUP, ResearchStep, default_llm, default_lookup
from lcagraph.agents.emissions import decide_emission_scan, emission_scan_router, emissions_step
from lcagraph.agents.processes import ProcessesListResult, build_processes_list, processes_step
from lcagraph.agents.product_analysis import (
    analyze_product,
    build_product_analysis_graph,
    build_product_analysis_spec,
)
from lcagraph.agents.product_research import (
    basic_info_step,
    component_step,
    supplier_step,
    technology_step,
)

__all__ = [
    "ResearchStep",
    "DEFAULT_LOOKUP",
    "default_llm",
    "default_lookup",
    "basic_info_step",
    "component_step",
    "supplier_step",
    "technology_step",
    "processes_step",
    "emissions_step",
    "emission_scan_router",
    "decide_emission_scan",
    "build_processes_list",
    "ProcessesListResult",
    "build_product_analysis_spec",
    "build_product_analysis_graph",
    "analyze_product",
]
