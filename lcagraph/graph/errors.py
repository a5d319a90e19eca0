"""
Workflow error taxonomy.

Compile-time problems derive from ValidationError and are never raised
while a run is in progress. Everything a run can end with, other than a
complete state, is a WorkflowError subclass that names the step or stage
responsible.
"""

from typing import Any


class WorkflowError(Exception):
    """Base class for every terminal workflow outcome other than success."""


# ---------------------------------------------------------------------------
# Compile time
# ---------------------------------------------------------------------------


class ValidationError(WorkflowError):
    """The graph definition is malformed."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class UnknownStepReference(ValidationError):
    """An edge, router outcome, prerequisite or entry names an undeclared step."""


class UnreachableStep(ValidationError):
    """A declared step cannot be reached from the entry point."""


class CyclicUnconditionalPath(ValidationError):
    """Static edges alone form a cycle that no router can exit."""


class AmbiguousWriter(ValidationError):
    """More than one step writes an overwrite field, or writers disagree on policy."""


# ---------------------------------------------------------------------------
# Programmer errors surfaced at run time
# ---------------------------------------------------------------------------


class UndeclaredOutputField(WorkflowError):
    """A step returned a field it did not declare."""

    def __init__(self, step_id: str, fields: list[str]):
        self.step_id = step_id
        self.fields = sorted(fields)
        super().__init__(f"Step '{step_id}' returned undeclared output field(s): {self.fields}")


class UnknownRouterOutcome(WorkflowError):
    """A router returned a label outside its declared outcome set."""

    def __init__(self, router: str, outcome: Any, known: list[str]):
        self.router = router
        self.outcome = outcome
        super().__init__(f"Router '{router}' returned unknown outcome {outcome!r}; known: {known}")


# ---------------------------------------------------------------------------
# Step failures
# ---------------------------------------------------------------------------


class ExternalCallFailure(WorkflowError):
    """A reasoning, extraction or lookup call failed or timed out."""

    def __init__(self, message: str, *, call: str = "", cause: BaseException | None = None):
        super().__init__(message)
        self.call = call
        self.cause = cause


class LookupFailure(ExternalCallFailure):
    """A lookup call failed. The tool call loop records these as error results."""


class StepFailed(WorkflowError):
    """A step failed and the step was not marked best-effort."""

    def __init__(self, step_id: str, error: str, cause: BaseException | None = None):
        self.step_id = step_id
        self.error = error
        self.cause = cause
        super().__init__(f"Step '{step_id}' failed: {error}")


class StepCancelled(Exception):
    """Raised inside a step when it stops at a turn boundary after cancellation."""


# ---------------------------------------------------------------------------
# Run outcomes
# ---------------------------------------------------------------------------


class IncompleteWorkflow(WorkflowError):
    """The run went quiet while some required step never became eligible."""

    def __init__(
        self,
        never_eligible: set[str],
        missing: dict[str, set[str]] | None = None,
        message: str | None = None,
    ):
        self.never_eligible = set(never_eligible)
        self.missing = {k: set(v) for k, v in (missing or {}).items()}
        if message is None:
            details = ", ".join(
                f"{step} (waiting on {sorted(self.missing[step])})"
                if self.missing.get(step)
                else step
                for step in sorted(self.never_eligible)
            )
            message = f"Workflow stalled; steps never became eligible: {details}"
        super().__init__(message)


class StepBudgetExceeded(IncompleteWorkflow):
    """Routers kept re-arming steps past the configured execution budget."""

    def __init__(self, budget: int, pending: set[str]):
        self.budget = budget
        super().__init__(
            never_eligible=pending,
            message=f"Exceeded {budget} step executions; still pending: {sorted(pending)}",
        )


class WorkflowCancelled(WorkflowError):
    """The caller cancelled the run. Output of unfinished steps was discarded."""

    def __init__(self, completed: list[str], discarded: list[str]):
        self.completed = list(completed)
        self.discarded = sorted(discarded)
        super().__init__(
            f"Workflow cancelled after {len(self.completed)} step completion(s); "
            f"discarded output of: {self.discarded}"
        )
