"""
Edge Protocol - How steps connect in a graph.

Edges define what runs after a step completes:
- always: the target is activated every time the source completes
- conditional: a Router inspects the merged state and picks one of a
  closed set of named outcomes, each mapping to zero or more targets

Routers never return step names directly. They return an outcome label,
and the label -> targets table is checked against the graph when it is
compiled, so a misspelt target fails before any run starts.

The virtual START step seeds the run; END marks an outcome that activates
nothing.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field, model_validator

from lcagraph.graph.errors import (
    AmbiguousWriter,
    CyclicUnconditionalPath,
    UnknownRouterOutcome,
    UnknownStepReference,
    UnreachableStep,
    ValidationError,
)
from lcagraph.graph.step import MergePolicy, OutputField, StepProtocol, StepSpec

logger = logging.getLogger(__name__)

START = "__start__"
END = "__end__"


class EdgeCondition(StrEnum):
    """When an edge activates its target."""

    ALWAYS = "always"  # Every time the source completes
    CONDITIONAL = "conditional"  # Router decides from the merged state


class Router(BaseModel):
    """
    A closed set of named outcomes and the function that picks one.

    Example:
        Router(
            name="emission_scan",
            decide=lambda state: (
                "next_process"
                if state["currentProcessIndex"] < len(state["processesList"])
                else "exhausted"
            ),
            outcomes={"next_process": ["getEmissions"], "exhausted": ["finalize"]},
        )
    """

    name: str
    decide: Callable[[Mapping[str, Any]], str] = Field(exclude=True)
    outcomes: dict[str, list[str]] = Field(description="Outcome label -> target step ids")
    description: str = ""

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    def possible_targets(self) -> set[str]:
        return {target for targets in self.outcomes.values() for target in targets}

    def route(self, state: Mapping[str, Any]) -> tuple[str, list[str]]:
        """Evaluate the router and return (outcome, targets excluding END)."""
        outcome = self.decide(state)
        if not isinstance(outcome, str) or outcome not in self.outcomes:
            raise UnknownRouterOutcome(self.name, outcome, sorted(self.outcomes))
        return str(outcome), [t for t in self.outcomes[outcome] if t != END]


class EdgeSpec(BaseModel):
    """
    Specification for an edge leaving a step.

    Examples:
        # Static fan-out from the start of the run
        EdgeSpec(source=START, target="getComponent")

        # Loop-back routing
        EdgeSpec(
            source="getEmissions",
            condition=EdgeCondition.CONDITIONAL,
            router=emission_router,
        )
    """

    id: str = ""
    source: str = Field(description="Source step ID or START")
    target: str | None = Field(default=None, description="Target for ALWAYS edges")
    condition: EdgeCondition = EdgeCondition.ALWAYS
    router: Router | None = Field(default=None, description="Router for CONDITIONAL edges")
    description: str = ""

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            router = data.get("router")
            label = data.get("target") or (getattr(router, "name", None) or "router")
            data = {**data, "id": f"{data.get('source')}->{label}"}
        return data

    def possible_targets(self) -> set[str]:
        if self.condition == EdgeCondition.ALWAYS:
            return {self.target} if self.target else set()
        return self.router.possible_targets() if self.router else set()


@dataclass(frozen=True)
class CompiledGraph:
    """Immutable, validated graph shared by every run."""

    id: str
    entry_step: str
    steps: Mapping[str, StepSpec]
    implementations: Mapping[str, StepProtocol]
    static_targets: Mapping[str, tuple[str, ...]]
    routers: Mapping[str, tuple[Router, ...]]
    prerequisites: Mapping[str, frozenset[str]]
    field_policies: Mapping[str, OutputField]
    initial_steps: tuple[str, ...]
    statically_required: frozenset[str]
    max_step_executions: int = 1000

    def describe(self) -> str:
        """Human-readable outline of the graph, one line per edge."""
        lines = [f"graph {self.id} (entry: {self.entry_step})"]
        for source in [START, *self.steps]:
            for target in self.static_targets.get(source, ()):
                lines.append(f"  {source} -> {target}")
            for router in self.routers.get(source, ()):
                for outcome, targets in router.outcomes.items():
                    lines.append(f"  {source} -[{router.name}:{outcome}]-> {', '.join(targets)}")
        for step_id, prereqs in self.prerequisites.items():
            if prereqs:
                lines.append(f"  {step_id} waits on {', '.join(sorted(prereqs))}")
        return "\n".join(lines)


class GraphSpec(BaseModel):
    """
    Complete specification of a workflow graph.

    Example:
        GraphSpec(
            id="product-analysis",
            entry_step=START,
            steps=[...],
            edges=[...],
        )
    """

    id: str = "graph"
    entry_step: str = Field(default=START, description="Step to start from, or START")
    steps: list[StepSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    description: str = ""

    # Execution limits
    max_step_executions: int = Field(
        default=1000, description="Maximum step executions per run before aborting"
    )

    model_config = {"frozen": True}

    def get_outgoing_edges(self, step_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.source == step_id]

    def _static_adjacency(self) -> dict[str, set[str]]:
        graph: dict[str, set[str]] = {step.id: set() for step in self.steps}
        for edge in self.edges:
            if edge.condition != EdgeCondition.ALWAYS or not edge.target:
                continue
            if edge.source in graph and edge.target in graph:
                graph[edge.source].add(edge.target)
        return graph

    def _reachable_from_entry(self, static_only: bool = False) -> set[str]:
        reachable: set[str] = set()
        to_visit = [self.entry_step]
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in self.get_outgoing_edges(current):
                if static_only and edge.condition != EdgeCondition.ALWAYS:
                    continue
                to_visit.extend(t for t in edge.possible_targets() if t != END)
        reachable.discard(START)
        return reachable

    def _find_static_cycle(self) -> list[str] | None:
        graph = self._static_adjacency()
        visiting: set[str] = set()
        done: set[str] = set()
        stack: list[str] = []

        def visit(node: str) -> list[str] | None:
            visiting.add(node)
            stack.append(node)
            for target in sorted(graph[node]):
                if target in visiting:
                    return stack[stack.index(target) :] + [target]
                if target not in done:
                    cycle = visit(target)
                    if cycle:
                        return cycle
            visiting.discard(node)
            done.add(node)
            stack.pop()
            return None

        for node in sorted(graph):
            if node not in done:
                cycle = visit(node)
                if cycle:
                    return cycle
        return None

    def _collect_problems(self) -> list[tuple[type[ValidationError], str]]:
        problems: list[tuple[type[ValidationError], str]] = []

        if not self.steps:
            problems.append((ValidationError, "Graph must declare at least one step"))
            return problems

        ids = [step.id for step in self.steps]
        seen: set[str] = set()
        for step_id in ids:
            if step_id in seen:
                problems.append((ValidationError, f"Duplicate step ID: '{step_id}'"))
            seen.add(step_id)
            if step_id in (START, END):
                problems.append((ValidationError, f"Step ID '{step_id}' is reserved"))
        known = set(ids)

        for step in self.steps:
            if step.implementation() is None:
                problems.append((ValidationError, f"Step '{step.id}' has no work to run"))
            for prereq in step.prerequisites:
                if prereq == step.id:
                    problems.append(
                        (ValidationError, f"Step '{step.id}' lists itself as a prerequisite")
                    )
                elif prereq not in known:
                    problems.append(
                        (
                            UnknownStepReference,
                            f"Step '{step.id}' has unknown prerequisite '{prereq}'",
                        )
                    )

        # Entry point
        if self.entry_step != START and self.entry_step not in known:
            problems.append(
                (UnknownStepReference, f"Entry step '{self.entry_step}' not found")
            )
        if self.entry_step == START and not self.get_outgoing_edges(START):
            problems.append((ValidationError, "Entry is START but no edge leaves START"))

        # Edge references
        for edge in self.edges:
            if edge.source != START and edge.source not in known:
                problems.append(
                    (
                        UnknownStepReference,
                        f"Edge '{edge.id}' references missing source '{edge.source}'",
                    )
                )
            if edge.condition == EdgeCondition.ALWAYS:
                if edge.router is not None or not edge.target:
                    problems.append(
                        (ValidationError, f"Static edge '{edge.id}' needs a target and no router")
                    )
                elif edge.target != END and edge.target not in known:
                    problems.append(
                        (
                            UnknownStepReference,
                            f"Edge '{edge.id}' references missing target '{edge.target}'",
                        )
                    )
            else:
                if edge.router is None or edge.target:
                    problems.append(
                        (
                            ValidationError,
                            f"Conditional edge '{edge.id}' needs a router and no fixed target",
                        )
                    )
                    continue
                if edge.source == START:
                    problems.append(
                        (ValidationError, f"Edge '{edge.id}': START edges must be static")
                    )
                if not edge.router.outcomes:
                    problems.append(
                        (ValidationError, f"Router '{edge.router.name}' declares no outcomes")
                    )
                for outcome, targets in edge.router.outcomes.items():
                    for target in targets:
                        if target != END and target not in known:
                            problems.append(
                                (
                                    UnknownStepReference,
                                    f"Router '{edge.router.name}' outcome '{outcome}' "
                                    f"targets unknown step '{target}'",
                                )
                            )

        cycle = self._find_static_cycle()
        if cycle:
            problems.append(
                (
                    CyclicUnconditionalPath,
                    f"Static edges form a cycle: {' -> '.join(cycle)}",
                )
            )

        if self.entry_step == START or self.entry_step in known:
            reachable = self._reachable_from_entry()
            for step in self.steps:
                if step.id not in reachable:
                    problems.append(
                        (UnreachableStep, f"Step '{step.id}' is unreachable from entry")
                    )

        # Writers of each output field
        writers: dict[str, list[tuple[str, OutputField]]] = {}
        for step in self.steps:
            for output_field in step.output_fields:
                writers.setdefault(output_field.name, []).append((step.id, output_field))
        for name, declared in writers.items():
            policies = {(f.policy, f.key) for _, f in declared}
            step_ids = [step_id for step_id, _ in declared]
            if len(policies) > 1:
                problems.append(
                    (
                        AmbiguousWriter,
                        f"Field '{name}' declared with conflicting policies by {step_ids}",
                    )
                )
            elif len(declared) > 1 and declared[0][1].policy == MergePolicy.OVERWRITE:
                problems.append(
                    (
                        AmbiguousWriter,
                        f"Overwrite field '{name}' has more than one writer: {step_ids}",
                    )
                )

        return problems

    def validate(self) -> list[str]:
        """Validate the graph structure. Returns a list of problems."""
        return [message for _, message in self._collect_problems()]

    def compile(self) -> CompiledGraph:
        """Validate and freeze the graph, raising the first typed problem."""
        problems = self._collect_problems()
        if problems:
            error_cls, message = problems[0]
            raise error_cls(message, errors=[m for _, m in problems])

        static_targets: dict[str, list[str]] = {}
        routers: dict[str, list[Router]] = {}
        for edge in self.edges:
            if edge.condition == EdgeCondition.ALWAYS:
                if edge.target != END:
                    static_targets.setdefault(edge.source, []).append(edge.target)
            else:
                routers.setdefault(edge.source, []).append(edge.router)

        field_policies: dict[str, OutputField] = {}
        for step in self.steps:
            for output_field in step.output_fields:
                field_policies.setdefault(output_field.name, output_field)

        if self.entry_step == START:
            initial = tuple(dict.fromkeys(static_targets.get(START, [])))
        else:
            initial = (self.entry_step,)

        compiled = CompiledGraph(
            id=self.id,
            entry_step=self.entry_step,
            steps=MappingProxyType({s.id: s for s in self.steps}),
            implementations=MappingProxyType({s.id: s.implementation() for s in self.steps}),
            static_targets=MappingProxyType(
                {k: tuple(dict.fromkeys(v)) for k, v in static_targets.items()}
            ),
            routers=MappingProxyType({k: tuple(v) for k, v in routers.items()}),
            prerequisites=MappingProxyType(
                {s.id: frozenset(s.prerequisites) for s in self.steps}
            ),
            field_policies=MappingProxyType(field_policies),
            initial_steps=initial,
            statically_required=frozenset(self._reachable_from_entry(static_only=True)),
            max_step_executions=self.max_step_executions,
        )
        logger.debug(
            f"Compiled graph '{self.id}': {len(self.steps)} steps, {len(self.edges)} edges"
        )
        return compiled


def compile_graph(
    steps: list[StepSpec],
    edges: list[EdgeSpec],
    entry_step: str = START,
    *,
    graph_id: str = "graph",
    max_step_executions: int = 1000,
) -> CompiledGraph:
    """Build and compile a graph in one call."""
    return GraphSpec(
        id=graph_id,
        entry_step=entry_step,
        steps=steps,
        edges=edges,
        max_step_executions=max_step_executions,
    ).compile()
