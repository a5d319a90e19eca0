"""
Tests for GraphExecutor.

Covers:
- Static DAGs and read-only results
- Concurrent fan-out and fan-in in every completion order
- Router loops that repeat a step until a list is exhausted
- Fail-fast aborts, best-effort steps and optional outputs
- Retries of external call failures with backoff
- Liveness errors and the execution budget
- Cooperative cancellation
- Trace context propagation into steps
"""

import asyncio
import itertools
from types import MappingProxyType
from unittest.mock import AsyncMock, call

import pytest

from lcagraph.graph import (
    END,
    START,
    EdgeCondition,
    EdgeSpec,
    ExternalCallFailure,
    GraphExecutor,
    IncompleteWorkflow,
    MergePolicy,
    OutputField,
    Router,
    StepBudgetExceeded,
    StepContext,
    StepFailed,
    StepProtocol,
    StepResult,
    StepSpec,
    UndeclaredOutputField,
    UnknownRouterOutcome,
    WorkflowCancelled,
    compile_graph,
    run_graph,
)
from lcagraph.observability import get_trace_context

SOURCES = OutputField(name="sources", policy=MergePolicy.UNION_BY_KEY, key="url")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def fn_step(step_id, func, *, writes=(), reads=(), prerequisites=(), **kwargs) -> StepSpec:
    return StepSpec(
        id=step_id,
        work=func,
        input_keys=list(reads),
        output_fields=[w if isinstance(w, OutputField) else OutputField(name=w) for w in writes],
        prerequisites=list(prerequisites),
        **kwargs,
    )


def delayed(delay: float, output: dict):
    async def work(inputs):
        await asyncio.sleep(delay)
        return output

    return work


class FlakyStep(StepProtocol):
    """Fails with an external call failure a fixed number of times, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0
        self.retries_seen: list[int] = []

    async def execute(self, ctx: StepContext) -> StepResult:
        self.calls += 1
        self.retries_seen.append(ctx.retries_left)
        if self.calls <= self.failures:
            return StepResult(
                success=False,
                error="HTTP 503",
                cause=ExternalCallFailure("HTTP 503", call="llm"),
            )
        return StepResult(success=True, output={"x": self.calls})


class TurnBasedStep(StepProtocol):
    """Simulates a long tool call loop that checks for cancellation every turn."""

    def __init__(self, turns: int = 200):
        self.max_turns = turns
        self.turns = 0

    async def execute(self, ctx: StepContext) -> StepResult:
        for _ in range(self.max_turns):
            ctx.check_cancelled()
            self.turns += 1
            await asyncio.sleep(0.01)
        return StepResult(success=True, output={"slow": "done"})


def scan_item(inputs):
    idx = inputs.get("idx", 0)
    items = inputs.get("items") or []
    if idx >= len(items):
        return {"idx": idx}
    return {"idx": idx + 1, "found": [f"{items[idx]}-emission"]}


def scan_graph(items: list[str], **compile_kwargs):
    """seed → scan ↺ → finish, with an independent side branch also feeding finish."""
    router = Router(
        name="scan",
        decide=lambda state: "more" if state["idx"] < len(state["items"]) else "done",
        outcomes={"more": ["scan"], "done": ["finish"]},
    )
    steps = [
        fn_step("seed", lambda inputs: {"items": list(items)}, writes=["items"]),
        fn_step("side", delayed(0.01, {"note": "side"}), writes=["note"]),
        fn_step(
            "scan",
            scan_item,
            reads=["items", "idx"],
            writes=["idx", OutputField(name="found", policy=MergePolicy.APPEND_LIST)],
            prerequisites=["seed"],
        ),
        fn_step(
            "finish",
            lambda inputs: {"report": {"found": list(inputs.get("found", [])), "note": inputs["note"]}},
            reads=["found", "note"],
            writes=["report"],
            prerequisites=["scan", "side"],
        ),
    ]
    edges = [
        EdgeSpec(source=START, target="seed"),
        EdgeSpec(source=START, target="side"),
        EdgeSpec(source="seed", target="scan"),
        EdgeSpec(source="scan", condition=EdgeCondition.CONDITIONAL, router=router),
        EdgeSpec(source="side", target="finish"),
        EdgeSpec(source="finish", target=END),
    ]
    return compile_graph(steps, edges, graph_id="scan", **compile_kwargs)


@pytest.fixture
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", sleep)
    return sleep


# ---------------------------------------------------------------------------
# Static graphs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_linear_graph_runs_in_order():
    graph = compile_graph(
        [
            fn_step("a", lambda inputs: {"x": 1}, writes=["x"]),
            fn_step("b", lambda inputs: {"y": inputs["x"] + 1}, reads=["x"], writes=["y"]),
        ],
        [
            EdgeSpec(source=START, target="a"),
            EdgeSpec(source="a", target="b"),
            EdgeSpec(source="b", target=END),
        ],
    )

    result = await GraphExecutor().execute(graph, {"seed": True})

    assert result.path == ["a", "b"]
    assert dict(result.state) == {"seed": True, "x": 1, "y": 2}
    assert result.step_visit_counts == {"a": 1, "b": 1}
    assert result.is_clean_success


@pytest.mark.asyncio
async def test_final_state_is_read_only():
    graph = compile_graph(
        [fn_step("a", lambda inputs: {"x": 1}, writes=["x"])],
        [EdgeSpec(source=START, target="a")],
    )
    result = await run_graph(graph)

    with pytest.raises(TypeError):
        result.state["x"] = 2  # type: ignore[index]


@pytest.mark.asyncio
async def test_initial_state_is_not_mutated():
    graph = compile_graph(
        [
            fn_step(
                "a",
                lambda inputs: {"items": ["b"]},
                writes=[OutputField(name="items", policy=MergePolicy.APPEND_LIST)],
            )
        ],
        [EdgeSpec(source=START, target="a")],
    )
    initial = {"items": ["a"]}

    result = await run_graph(graph, initial)

    assert initial == {"items": ["a"]}
    assert result.state["items"] == ["a", "b"]


@pytest.mark.asyncio
async def test_step_sees_read_only_snapshot_of_declared_inputs():
    seen = {}

    def probe(inputs):
        seen["type"] = type(inputs)
        seen["keys"] = set(inputs)
        return {}

    graph = compile_graph(
        [fn_step("probe", probe, reads=["productName", "missing"])],
        [EdgeSpec(source=START, target="probe")],
    )
    await run_graph(graph, {"productName": "Solar Panel", "supplier": "Suntech Power"})

    assert seen["type"] is MappingProxyType
    assert seen["keys"] == {"productName"}


# ---------------------------------------------------------------------------
# Concurrency and fan-in
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_independent_branches_run_concurrently():
    b_started = asyncio.Event()

    async def a(inputs):
        await asyncio.wait_for(b_started.wait(), timeout=1.0)
        return {"x": 1}

    async def b(inputs):
        b_started.set()
        return {"y": 2}

    graph = compile_graph(
        [fn_step("a", a, writes=["x"]), fn_step("b", b, writes=["y"])],
        [EdgeSpec(source=START, target="a"), EdgeSpec(source=START, target="b")],
    )
    result = await run_graph(graph)

    assert result.state["x"] == 1
    assert result.state["y"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("delays", list(itertools.permutations([0.0, 0.01, 0.02])))
async def test_fan_in_runs_once_after_all_prerequisites(delays):
    calls = []

    def join(inputs):
        calls.append(dict(inputs))
        return {"joined": sorted(inputs)}

    graph = compile_graph(
        [
            fn_step("a", delayed(delays[0], {"ra": 1}), writes=["ra"]),
            fn_step("b", delayed(delays[1], {"rb": 2}), writes=["rb"]),
            fn_step("c", delayed(delays[2], {"rc": 3}), writes=["rc"]),
            fn_step(
                "join",
                join,
                reads=["ra", "rb", "rc"],
                writes=["joined"],
                prerequisites=["a", "b", "c"],
            ),
        ],
        [
            EdgeSpec(source=START, target="a"),
            EdgeSpec(source=START, target="b"),
            EdgeSpec(source=START, target="c"),
            EdgeSpec(source="a", target="join"),
            EdgeSpec(source="b", target="join"),
            EdgeSpec(source="c", target="join"),
        ],
    )

    result = await run_graph(graph)

    assert calls == [{"ra": 1, "rb": 2, "rc": 3}]
    assert result.path[-1] == "join"
    assert result.step_visit_counts["join"] == 1


@pytest.mark.asyncio
async def test_static_reactivation_after_start_is_ignored():
    graph = compile_graph(
        [
            fn_step("a", lambda inputs: {"x": 1}, writes=["x"]),
            fn_step("b", delayed(0.02, {"y": 2}), writes=["y"]),
            fn_step("c", lambda inputs: {"z": 3}, writes=["z"]),
        ],
        [
            EdgeSpec(source=START, target="a"),
            EdgeSpec(source=START, target="b"),
            EdgeSpec(source="a", target="c"),
            EdgeSpec(source="b", target="c"),
        ],
    )

    result = await run_graph(graph)

    assert result.step_visit_counts["c"] == 1
    assert result.path.index("c") < result.path.index("b")


@pytest.mark.asyncio
@pytest.mark.parametrize("delays", list(itertools.permutations([0.0, 0.01, 0.02])))
async def test_union_merge_is_independent_of_completion_order(delays):
    contributions = [
        [{"url": "u1", "score": 0.3}, {"url": "u2", "score": 0.8}],
        [{"url": "u2", "score": 0.5}, {"url": "u3", "score": 0.1}],
        [{"url": "u1", "score": 0.9}],
    ]
    graph = compile_graph(
        [
            fn_step(f"s{i}", delayed(delays[i], {"sources": contributions[i]}), writes=[SOURCES])
            for i in range(3)
        ],
        [EdgeSpec(source=START, target=f"s{i}") for i in range(3)],
    )

    result = await run_graph(graph)

    assert {(s["url"], s["score"]) for s in result.state["sources"]} == {
        ("u1", 0.9),
        ("u2", 0.8),
        ("u3", 0.1),
    }


# ---------------------------------------------------------------------------
# Router loops
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_loop_runs_once_per_item_and_finish_once():
    graph = scan_graph(["silicon purification", "wafer slicing", "module assembly"])

    result = await GraphExecutor().execute(graph, {"idx": 0})

    assert result.step_visit_counts["scan"] == 3
    assert result.step_visit_counts["finish"] == 1
    assert result.state["idx"] == 3
    assert result.state["report"] == {
        "found": [
            "silicon purification-emission",
            "wafer slicing-emission",
            "module assembly-emission",
        ],
        "note": "side",
    }
    assert result.path[-1] == "finish"


@pytest.mark.asyncio
async def test_loop_with_empty_list_goes_straight_to_finish():
    graph = scan_graph([])

    result = await GraphExecutor().execute(graph, {"idx": 0})

    assert result.step_visit_counts["scan"] == 1
    assert result.step_visit_counts["finish"] == 1
    assert result.state["report"] == {"found": [], "note": "side"}


@pytest.mark.asyncio
async def test_overwrite_field_keeps_last_written_value():
    graph = scan_graph(["a", "b"])
    result = await GraphExecutor().execute(graph, {"idx": 0})
    assert result.state["idx"] == 2


@pytest.mark.asyncio
async def test_unknown_router_outcome_at_runtime():
    router = Router(name="broken", decide=lambda state: "sideways", outcomes={"ok": [END]})
    graph = compile_graph(
        [fn_step("a", lambda inputs: {}, writes=[])],
        [
            EdgeSpec(source=START, target="a"),
            EdgeSpec(source="a", condition=EdgeCondition.CONDITIONAL, router=router),
        ],
    )

    with pytest.raises(UnknownRouterOutcome):
        await run_graph(graph)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_step_failure_aborts_run_and_cancels_siblings():
    events = []

    async def long_running(inputs):
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            events.append("cancelled")
            raise
        return {"long": 1}

    def boom(inputs):
        raise RuntimeError("kaput")

    graph = compile_graph(
        [fn_step("long", long_running, writes=["long"]), fn_step("boom", boom, writes=["b"])],
        [EdgeSpec(source=START, target="long"), EdgeSpec(source=START, target="boom")],
    )

    with pytest.raises(StepFailed) as exc_info:
        await run_graph(graph)

    assert exc_info.value.step_id == "boom"
    assert isinstance(exc_info.value.cause, RuntimeError)
    assert "kaput" in str(exc_info.value)
    assert events == ["cancelled"]


@pytest.mark.asyncio
async def test_best_effort_failure_contributes_nothing():
    joined = {}

    def join(inputs):
        joined.update(inputs)
        return {"done": True}

    graph = compile_graph(
        [
            fn_step("a", lambda inputs: 1 / 0, writes=["x"], best_effort=True),
            fn_step("b", lambda inputs: {"y": 2}, writes=["y"]),
            fn_step("c", join, reads=["x", "y"], writes=["done"], prerequisites=["a", "b"]),
        ],
        [
            EdgeSpec(source=START, target="a"),
            EdgeSpec(source=START, target="b"),
            EdgeSpec(source="a", target="c"),
            EdgeSpec(source="b", target="c"),
        ],
    )

    result = await run_graph(graph)

    assert "x" not in result.state
    assert result.state["done"] is True
    assert joined == {"y": 2}
    assert "a" in result.failed_steps
    assert not result.is_clean_success


@pytest.mark.asyncio
async def test_step_with_only_optional_outputs_is_tolerated():
    def fail(inputs):
        raise ValueError("no data")

    graph = compile_graph(
        [
            fn_step("a", fail, writes=[OutputField(name="extra", optional=True)]),
            fn_step("b", lambda inputs: {"y": 1}, writes=["y"]),
        ],
        [EdgeSpec(source=START, target="a"), EdgeSpec(source="a", target="b")],
    )

    result = await run_graph(graph)

    assert result.state["y"] == 1
    assert result.failed_steps == {"a": "no data"}


@pytest.mark.asyncio
async def test_undeclared_output_field_is_fatal():
    graph = compile_graph(
        [fn_step("a", lambda inputs: {"x": 1, "sneaky": 2}, writes=["x"])],
        [EdgeSpec(source=START, target="a")],
    )

    with pytest.raises(UndeclaredOutputField) as exc_info:
        await run_graph(graph)
    assert exc_info.value.fields == ["sneaky"]


@pytest.mark.asyncio
async def test_non_mapping_output_fails_step():
    graph = compile_graph(
        [fn_step("a", lambda inputs: ["not", "a", "dict"], writes=["x"])],
        [EdgeSpec(source=START, target="a")],
    )

    with pytest.raises(StepFailed, match="expected a mapping"):
        await run_graph(graph)


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_external_failure_is_retried_with_backoff(fast_sleep):
    flaky = FlakyStep(failures=2)
    graph = compile_graph(
        [StepSpec(id="a", work=flaky, output_fields=[OutputField(name="x")], max_retries=2)],
        [EdgeSpec(source=START, target="a")],
    )

    result = await run_graph(graph)

    assert flaky.calls == 3
    assert result.state["x"] == 3
    assert fast_sleep.await_args_list == [call(1.0), call(2.0)]
    assert flaky.retries_seen == [2, 1, 0]


@pytest.mark.asyncio
async def test_retries_exhausted_fails_step(fast_sleep):
    flaky = FlakyStep(failures=5)
    graph = compile_graph(
        [StepSpec(id="a", work=flaky, output_fields=[OutputField(name="x")], max_retries=1)],
        [EdgeSpec(source=START, target="a")],
    )

    with pytest.raises(StepFailed) as exc_info:
        await run_graph(graph)

    assert flaky.calls == 2
    assert isinstance(exc_info.value.cause, ExternalCallFailure)


@pytest.mark.asyncio
async def test_programming_errors_are_not_retried(fast_sleep):
    calls = []

    def broken(inputs):
        calls.append(1)
        raise KeyError("productName")

    graph = compile_graph(
        [fn_step("a", broken, writes=["x"], max_retries=3)],
        [EdgeSpec(source=START, target="a")],
    )

    with pytest.raises(StepFailed):
        await run_graph(graph)
    assert calls == [1]
    fast_sleep.assert_not_awaited()


# ---------------------------------------------------------------------------
# Liveness
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_prerequisite_never_activated_raises_incomplete_workflow():
    router = Router(
        name="pick",
        decide=lambda state: "left",
        outcomes={"left": ["b"], "right": ["c"]},
    )
    graph = compile_graph(
        [
            fn_step("a", lambda inputs: {}),
            fn_step("b", lambda inputs: {"lb": 1}, writes=["lb"]),
            fn_step("c", lambda inputs: {"lc": 1}, writes=["lc"]),
            fn_step("d", lambda inputs: {"ld": 1}, writes=["ld"], prerequisites=["b", "c"]),
        ],
        [
            EdgeSpec(source=START, target="a"),
            EdgeSpec(source="a", condition=EdgeCondition.CONDITIONAL, router=router),
            EdgeSpec(source="b", target="d"),
            EdgeSpec(source="c", target="d"),
        ],
    )

    with pytest.raises(IncompleteWorkflow) as exc_info:
        await run_graph(graph)

    assert exc_info.value.never_eligible == {"d"}
    assert exc_info.value.missing == {"d": {"c"}}


@pytest.mark.asyncio
async def test_endless_router_loop_hits_execution_budget():
    router = Router(
        name="forever",
        decide=lambda state: "again",
        outcomes={"again": ["a"], "stop": [END]},
    )
    graph = compile_graph(
        [fn_step("a", lambda inputs: {})],
        [
            EdgeSpec(source=START, target="a"),
            EdgeSpec(source="a", condition=EdgeCondition.CONDITIONAL, router=router),
        ],
        max_step_executions=5,
    )

    with pytest.raises(StepBudgetExceeded) as exc_info:
        await run_graph(graph)

    assert isinstance(exc_info.value, IncompleteWorkflow)
    assert exc_info.value.budget == 5
    assert exc_info.value.never_eligible == {"a"}


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancellation_discards_running_steps():
    slow = TurnBasedStep()
    graph = compile_graph(
        [
            fn_step("fast", lambda inputs: {"fast": 1}, writes=["fast"]),
            StepSpec(id="slow", work=slow, output_fields=[OutputField(name="slow")]),
        ],
        [EdgeSpec(source=START, target="fast"), EdgeSpec(source=START, target="slow")],
    )
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    with pytest.raises(WorkflowCancelled) as exc_info:
        await GraphExecutor().execute(graph, cancel_event=cancel)

    assert exc_info.value.completed == ["fast"]
    assert exc_info.value.discarded == ["slow"]
    assert 0 < slow.turns < slow.max_turns


@pytest.mark.asyncio
async def test_cancellation_discards_output_finished_after_cancel():
    merged = []

    def downstream(inputs):
        merged.append(inputs)
        return {}

    graph = compile_graph(
        [
            fn_step("late", delayed(0.05, {"late": 1}), writes=["late"]),
            fn_step("after", downstream, reads=["late"]),
        ],
        [EdgeSpec(source=START, target="late"), EdgeSpec(source="late", target="after")],
    )
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, cancel.set)

    with pytest.raises(WorkflowCancelled) as exc_info:
        await GraphExecutor().execute(graph, cancel_event=cancel)

    assert exc_info.value.completed == []
    assert exc_info.value.discarded == ["late"]
    assert merged == []


@pytest.mark.asyncio
async def test_cancelled_before_start():
    graph = compile_graph(
        [fn_step("a", lambda inputs: {"x": 1}, writes=["x"])],
        [EdgeSpec(source=START, target="a")],
    )
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(WorkflowCancelled) as exc_info:
        await GraphExecutor().execute(graph, cancel_event=cancel)
    assert exc_info.value.completed == []


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_steps_log_with_run_and_step_context():
    seen = {}

    def probe(inputs):
        seen.update(get_trace_context())
        return {}

    graph = compile_graph(
        [fn_step("probe", probe)],
        [EdgeSpec(source=START, target="probe")],
        graph_id="traced",
    )
    result = await GraphExecutor().execute(graph, run_id="run-123")

    assert result.run_id == "run-123"
    assert seen == {"run_id": "run-123", "graph_id": "traced", "step_id": "probe"}
    assert "step_id" not in get_trace_context()
