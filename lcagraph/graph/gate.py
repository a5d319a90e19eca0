"""
Dependency Gate - decides when a step may start.

A step runs once it has been activated (by the entry point, a static edge
or a router outcome) and every one of its prerequisites has completed.
Completion order of the prerequisites does not matter.

"Completed" means the step produced output at least once and is not about
to run again. A prerequisite that is running, or that a router re-armed,
holds its dependents back until it settles. That is what lets a fan-in
step wait for a repeat-until-exhausted step to finish its whole scan.

The gate is owned by the executor's coordinating loop and is only ever
mutated there.
"""

from collections.abc import Iterable, Mapping


class DependencyGate:
    """Per-run bookkeeping of activated, running and completed steps."""

    def __init__(self, prerequisites: Mapping[str, Iterable[str]]):
        self._prerequisites: dict[str, frozenset[str]] = {
            step_id: frozenset(prereqs) for step_id, prereqs in prerequisites.items()
        }
        self._completed: set[str] = set()
        self._running: set[str] = set()
        self._pending: list[str] = []  # activated, not yet started; activation order
        self._started: set[str] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def completed(self) -> frozenset[str]:
        return frozenset(self._completed)

    @property
    def running(self) -> frozenset[str]:
        return frozenset(self._running)

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(self._pending)

    def prerequisites_of(self, step_id: str) -> frozenset[str]:
        return self._prerequisites.get(step_id, frozenset())

    def missing_prerequisites(
        self, step_id: str, completed: Iterable[str] | None = None
    ) -> set[str]:
        """
        Prerequisites that are not settled yet.

        The gate tracks the completed set itself; pass completed to check
        against another one. Running or re-armed prerequisites are never
        settled, whichever set is used.
        """
        done = self._completed if completed is None else set(completed)
        unsettled = self._running | set(self._pending)
        return {
            prereq
            for prereq in self.prerequisites_of(step_id)
            if prereq not in done or prereq in unsettled
        }

    def is_eligible(self, step_id: str, completed: Iterable[str] | None = None) -> bool:
        """True if the step is activated, idle, and all prerequisites are settled."""
        if step_id not in self._pending or step_id in self._running:
            return False
        return not self.missing_prerequisites(step_id, completed)

    def eligible(self) -> list[str]:
        """Eligible steps in activation order."""
        return [step_id for step_id in self._pending if self.is_eligible(step_id)]

    def blocked(self) -> dict[str, set[str]]:
        """Activated steps that cannot start, with what they are waiting on."""
        return {
            step_id: self.missing_prerequisites(step_id)
            for step_id in self._pending
            if not self.is_eligible(step_id)
        }

    def has_started(self, step_id: str) -> bool:
        return step_id in self._started

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def activate(self, step_id: str, *, rearm: bool = False) -> bool:
        """
        Request that a step run.

        Static activations of a step that already started in this run are
        ignored. A router activation (rearm=True) schedules it again.

        Returns:
            True if the step is now pending
        """
        if step_id in self._pending:
            return True
        if step_id in self._started and not rearm:
            return False
        self._pending.append(step_id)
        return True

    def mark_started(self, step_id: str) -> None:
        self._pending.remove(step_id)
        self._running.add(step_id)
        self._started.add(step_id)

    def mark_completed(self, step_id: str) -> None:
        self._running.discard(step_id)
        self._completed.add(step_id)

    def mark_abandoned(self, step_id: str) -> None:
        """Forget a running step whose output is being discarded."""
        self._running.discard(step_id)

    def is_quiescent(self) -> bool:
        """Nothing running and nothing can start."""
        return not self._running and not self.eligible()
