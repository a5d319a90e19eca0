"""
lcagraph - LLM research workflows for life-cycle assessment data gathering.

The graph package is the orchestration core: steps, static and routed
edges, dependency-gated fan-in, per-field merge policies and a bounded
tool call loop. The agents package builds the product analysis workflow
on top of it.

Example:
    from lcagraph import analyze_product

    analysis = await analyze_product("Solar Panel", "Suntech Power")
"""

from lcagraph.graph import (
    END,
    START,
    CompiledGraph,
    EdgeCondition,
    EdgeSpec,
    ExecutionResult,
    GraphExecutor,
    GraphSpec,
    MergePolicy,
    OutputField,
    Router,
    StepSpec,
    ToolCallLoop,
    WorkflowError,
    compile_graph,
    run_graph,
)
from lcagraph.agents import analyze_product, build_processes_list, build_product_analysis_graph
from lcagraph.config import RuntimeConfig
from lcagraph.schemas import EmissionSource, ProductAnalysis, ReferenceSource, UnitProcess

__version__ = "0.1.0"

__all__ = [
    "START",
    "END",
    "StepSpec",
    "OutputField",
    "MergePolicy",
    "EdgeSpec",
    "EdgeCondition",
    "Router",
    "GraphSpec",
    "CompiledGraph",
    "compile_graph",
    "GraphExecutor",
    "ExecutionResult",
    "run_graph",
    "ToolCallLoop",
    "WorkflowError",
    "RuntimeConfig",
    "analyze_product",
    "build_processes_list",
    "build_product_analysis_graph",
    "ReferenceSource",
    "UnitProcess",
    "EmissionSource",
    "ProductAnalysis",
]
