"""Workflow graph: steps, edges, routers, the dependency gate, the reducer and the executor."""

from lcagraph.graph.errors import (
    AmbiguousWriter,
    CyclicUnconditionalPath,
    ExternalCallFailure,
    IncompleteWorkflow,
    LookupFailure,
    StepBudgetExceeded,
    StepCancelled,
    StepFailed,
    UndeclaredOutputField,
    UnknownRouterOutcome,
    UnknownStepReference,
    UnreachableStep,
    ValidationError,
    WorkflowCancelled,
    WorkflowError,
)
from lcagraph.graph.step import (
    FunctionStep,
    MergePolicy,
    OutputField,
    StepContext,
    StepProtocol,
    StepResult,
    StepSpec,
)
from lcagraph.graph.edge import (
    END,
    START,
    CompiledGraph,
    EdgeCondition,
    EdgeSpec,
    GraphSpec,
    Router,
    compile_graph,
)
from lcagraph.graph.gate import DependencyGate
from lcagraph.graph.reducer import StateReducer, merge, union_by_key
from lcagraph.graph.tool_loop import LoopConfig, LoopOutcome, LookupTool, ToolCallLoop
from lcagraph.graph.executor import ExecutionResult, GraphExecutor, run_graph

__all__ = [
    # Errors
    "WorkflowError",
    "ValidationError",
    "UnknownStepReference",
    "UnreachableStep",
    "CyclicUnconditionalPath",
    "AmbiguousWriter",
    "UndeclaredOutputField",
    "UnknownRouterOutcome",
    "ExternalCallFailure",
    "LookupFailure",
    "StepFailed",
    "StepCancelled",
    "IncompleteWorkflow",
    "StepBudgetExceeded",
    "WorkflowCancelled",
    # Steps
    "StepSpec",
    "StepContext",
    "StepResult",
    "StepProtocol",
    "FunctionStep",
    "OutputField",
    "MergePolicy",
    # Edges
    "START",
    "END",
    "EdgeSpec",
    "EdgeCondition",
    "Router",
    "GraphSpec",
    "CompiledGraph",
    "compile_graph",
    # Runtime
    "DependencyGate",
    "StateReducer",
    "merge",
    "union_by_key",
    "ToolCallLoop",
    "LoopConfig",
    "LoopOutcome",
    "LookupTool",
    "GraphExecutor",
    "ExecutionResult",
    "run_graph",
]
