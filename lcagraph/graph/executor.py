"""
Graph Executor - Runs compiled workflow graphs.

The executor:
1. Seeds the workflow state and activates the entry step(s)
2. Starts every eligible step as its own asyncio task
3. Consumes completions one at a time on a single coordinating loop:
   merge the output, mark the step completed, follow static edges and
   routers, start whatever became eligible
4. Stops when nothing is running and nothing is eligible
5. Returns the merged state, or raises the single error that ended the run

Only the coordinating loop touches the state and the dependency gate.
Steps get a deep-copied, read-only view of their declared inputs and talk
back exclusively through their StepResult.
"""

import asyncio
import copy
import logging
import time
import uuid
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from lcagraph.graph.edge import CompiledGraph
from lcagraph.graph.errors import (
    ExternalCallFailure,
    IncompleteWorkflow,
    StepBudgetExceeded,
    StepCancelled,
    StepFailed,
    WorkflowCancelled,
)
from lcagraph.graph.gate import DependencyGate
from lcagraph.graph.reducer import StateReducer
from lcagraph.graph.step import StepContext, StepResult
from lcagraph.observability import set_trace_context


@dataclass
class ExecutionResult:
    """Result of a completed run."""

    run_id: str
    state: Mapping[str, Any] = field(default_factory=dict)
    path: list[str] = field(default_factory=list)  # Step IDs in completion order
    step_visit_counts: dict[str, int] = field(default_factory=dict)
    failed_steps: dict[str, str] = field(default_factory=dict)  # Tolerated failures
    total_latency_ms: int = 0

    @property
    def is_clean_success(self) -> bool:
        """True if no best-effort step failed along the way."""
        return not self.failed_steps


@dataclass
class _Completion:
    step_id: str
    result: StepResult
    finished_at: float
    sequence: int


class GraphExecutor:
    """
    Executes compiled graphs.

    Example:
        executor = GraphExecutor()
        result = await executor.execute(
            graph=compiled,
            initial_state={"productName": "Solar Panel", "supplier": "Suntech Power"},
        )
        result.state["processesList"]
    """

    def __init__(self, retry_backoff_seconds: float = 1.0):
        """
        Initialize the executor.

        Args:
            retry_backoff_seconds: Base delay for step retries; doubles per attempt
        """
        self.retry_backoff_seconds = retry_backoff_seconds
        self.logger = logging.getLogger(__name__)

    async def execute(
        self,
        graph: CompiledGraph,
        initial_state: Mapping[str, Any] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """
        Run the graph to completion.

        Args:
            graph: Compiled graph to execute
            initial_state: Seed fields (e.g. productName, supplier)
            cancel_event: Set it to cancel the run. Running steps stop at their
                next turn boundary and their output is discarded.
            run_id: Optional run identifier for log correlation

        Returns:
            ExecutionResult with the frozen final state

        Raises:
            StepFailed: A step failed and was not best-effort
            IncompleteWorkflow: The run went quiet with required steps unfinished
            WorkflowCancelled: cancel_event was set
            UndeclaredOutputField, UnknownRouterOutcome: Programmer errors
        """
        run_id = run_id or uuid.uuid4().hex
        set_trace_context(run_id=run_id, graph_id=graph.id)
        cancel_event = cancel_event or asyncio.Event()

        state: dict[str, Any] = copy.deepcopy(dict(initial_state or {}))
        reducer = StateReducer(graph.field_policies)
        gate = DependencyGate(graph.prerequisites)
        for step_id in graph.initial_steps:
            gate.activate(step_id)

        running: dict[asyncio.Task, str] = {}
        visits: Counter[str] = Counter()
        path: list[str] = []
        failed: dict[str, str] = {}
        executions = 0
        total_latency = 0
        started_at = time.monotonic()
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())

        self.logger.info(f"🚀 Run {run_id[:8]} of graph '{graph.id}' started")

        try:
            while True:
                if not cancel_event.is_set():
                    for step_id in gate.eligible():
                        if executions >= graph.max_step_executions:
                            raise StepBudgetExceeded(graph.max_step_executions, set(gate.pending))
                        executions += 1
                        gate.mark_started(step_id)
                        visits[step_id] += 1
                        task = asyncio.create_task(
                            self._run_step(
                                graph,
                                step_id,
                                self._snapshot(state, graph.steps[step_id].input_keys),
                                run_id,
                                visits[step_id],
                                executions,
                                cancel_event,
                            ),
                            name=f"step:{step_id}",
                        )
                        running[task] = step_id
                        self.logger.info(f"▶ Step {step_id} started (visit {visits[step_id]})")

                if not running:
                    if cancel_event.is_set():
                        raise WorkflowCancelled(completed=path, discarded=[])
                    break

                done, _ = await asyncio.wait(
                    [*running, cancel_waiter], return_when=asyncio.FIRST_COMPLETED
                )

                if cancel_event.is_set():
                    await self._drain_after_cancel(running, path)

                completions = sorted(
                    (self._collect(task, running.pop(task)) for task in done if task in running),
                    key=lambda c: (c.finished_at, c.sequence),
                )
                for completion in completions:
                    total_latency += completion.result.latency_ms
                    state = self._handle_completion(
                        graph, gate, reducer, completion, state, failed
                    )
                    path.append(completion.step_id)

            self._check_liveness(graph, gate)
        finally:
            cancel_waiter.cancel()
            await self._cancel_tasks(running)

        elapsed_ms = int((time.monotonic() - started_at) * 1000)
        self.logger.info(
            f"✓ Run {run_id[:8]} finished: {len(path)} step completions in {elapsed_ms}ms"
        )
        return ExecutionResult(
            run_id=run_id,
            state=MappingProxyType(state),
            path=path,
            step_visit_counts=dict(visits),
            failed_steps=failed,
            total_latency_ms=total_latency,
        )

    # ------------------------------------------------------------------
    # Step execution (runs inside the step's own task)
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        graph: CompiledGraph,
        step_id: str,
        inputs: Mapping[str, Any],
        run_id: str,
        visit: int,
        sequence: int,
        cancel_event: asyncio.Event,
    ) -> tuple[StepResult, float, int]:
        set_trace_context(step_id=step_id)
        spec = graph.steps[step_id]
        implementation = graph.implementations[step_id]

        attempt = 0
        while True:
            ctx = StepContext(
                step_id=step_id,
                inputs=inputs,
                run_id=run_id,
                visit=visit,
                cancel_event=cancel_event,
                retries_left=spec.max_retries - attempt,
            )
            try:
                result = await implementation.execute(ctx)
            except ExternalCallFailure as e:
                result = StepResult(success=False, error=str(e), cause=e)

            if result.success or not result.is_external_failure or attempt >= spec.max_retries:
                return result, time.monotonic(), sequence

            attempt += 1
            delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
            self.logger.warning(
                f"↻ Step {step_id}: retry {attempt}/{spec.max_retries} in {delay}s "
                f"after {result.error}"
            )
            await asyncio.sleep(delay)
            ctx.check_cancelled()

    # ------------------------------------------------------------------
    # Coordinating loop helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot(state: Mapping[str, Any], keys: list[str]) -> Mapping[str, Any]:
        return MappingProxyType(copy.deepcopy({k: state[k] for k in keys if k in state}))

    def _collect(self, task: asyncio.Task, step_id: str) -> _Completion:
        try:
            result, finished_at, sequence = task.result()
        except StepCancelled as e:
            # Cancellation was not requested, so the step gave up on its own
            result = StepResult(success=False, error="step cancelled itself", cause=e)
            finished_at, sequence = time.monotonic(), 0
        except Exception as e:
            self.logger.error(f"✗ Step {step_id} raised {type(e).__name__}: {e}")
            result = StepResult(success=False, error=str(e) or type(e).__name__, cause=e)
            finished_at, sequence = time.monotonic(), 0
        return _Completion(step_id, result, finished_at, sequence)

    def _handle_completion(
        self,
        graph: CompiledGraph,
        gate: DependencyGate,
        reducer: StateReducer,
        completion: _Completion,
        state: dict[str, Any],
        failed: dict[str, str],
    ) -> dict[str, Any]:
        """Merge one completion, then activate whatever its edges point at."""
        step_id, result = completion.step_id, completion.result
        spec = graph.steps[step_id]

        if result.success:
            state = reducer.merge(state, spec, result.output)
            self.logger.info(
                f"✓ Step {step_id} completed ({result.latency_ms}ms, "
                f"fields: {sorted(result.output)})"
            )
        elif spec.tolerates_failure:
            failed[step_id] = result.error or "unknown error"
            self.logger.warning(f"⚠ Step {step_id} failed, continuing without it: {result.error}")
        else:
            self.logger.error(f"✗ Step {step_id} failed: {result.error}")
            raise StepFailed(step_id, result.error or "unknown error", result.cause) from (
                result.cause
            )

        gate.mark_completed(step_id)

        for target in graph.static_targets.get(step_id, ()):
            if gate.activate(target):
                self.logger.debug(f"   → {step_id} activates {target}")

        view = MappingProxyType(state)
        for router in graph.routers.get(step_id, ()):
            outcome, targets = router.route(view)
            self.logger.info(f"   ⑂ Router {router.name}: {outcome} → {targets or ['END']}")
            for target in targets:
                gate.activate(target, rearm=True)

        return state

    def _check_liveness(self, graph: CompiledGraph, gate: DependencyGate) -> None:
        missing = gate.blocked()
        for step_id in graph.statically_required:
            if step_id not in gate.completed and step_id not in missing:
                missing[step_id] = set(gate.prerequisites_of(step_id)) - gate.completed
        if missing:
            raise IncompleteWorkflow(set(missing), missing)

    async def _drain_after_cancel(self, running: dict[asyncio.Task, str], path: list[str]):
        """Let running steps reach a turn boundary, drop their output, raise."""
        discarded = list(running.values())
        self.logger.warning(f"⏹ Cancellation requested; waiting for {discarded} to stop")
        await asyncio.gather(*running, return_exceptions=True)
        running.clear()
        raise WorkflowCancelled(completed=path, discarded=discarded)

    async def _cancel_tasks(self, running: dict[asyncio.Task, str]) -> None:
        if not running:
            return
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        running.clear()


async def run_graph(
    graph: CompiledGraph,
    initial_state: Mapping[str, Any] | None = None,
    *,
    cancel_event: asyncio.Event | None = None,
) -> ExecutionResult:
    """Run a graph with a default executor."""
    return await GraphExecutor().execute(graph, initial_state, cancel_event=cancel_event)
