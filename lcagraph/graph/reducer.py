"""
State Reducer - merges a step's partial output into the workflow state.

Every field a step writes has a declared MergePolicy:

- overwrite: the new value replaces the old one. Merges are applied in
  completion order, so the last step to complete wins.
- append_list: contributions are concatenated in completion order. A
  non-list value is appended as a single item.
- union_by_key: items are deduplicated by the field's key (e.g. "url").
  Keys keep their first-arrival position. When two items share a key,
  the one with the higher "score" is kept. Equal or missing scores fall
  back to comparing the items' canonical JSON, so the surviving item never
  depends on arrival order. Items with no key value are kept as they are.

The reducer is pure: merge() returns a new state and never mutates the
state or the output it was given.
"""

import copy
import json
import logging
from collections.abc import Mapping
from typing import Any

from lcagraph.graph.errors import UndeclaredOutputField
from lcagraph.graph.step import MergePolicy, OutputField, StepSpec

logger = logging.getLogger(__name__)


def _item_value(item: Any, attr: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(attr)
    return getattr(item, attr, None)


def _score(item: Any) -> float:
    score = _item_value(item, "score")
    try:
        return float(score) if score is not None else float("-inf")
    except (TypeError, ValueError):
        return float("-inf")


def _canonical(item: Any) -> str:
    data = dict(item) if isinstance(item, Mapping) else getattr(item, "__dict__", str(item))
    return json.dumps(data, sort_keys=True, default=str)


def _rank(item: Any) -> tuple[float, str]:
    return _score(item), _canonical(item)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def union_by_key(existing: list[Any], incoming: list[Any], key: str) -> list[Any]:
    """Merge two item collections, deduplicating by key."""
    merged: list[Any] = []
    positions: dict[Any, int] = {}
    for item in [*existing, *incoming]:
        item_key = _item_value(item, key)
        if item_key in (None, ""):
            merged.append(item)
            continue
        if item_key not in positions:
            positions[item_key] = len(merged)
            merged.append(item)
        elif _rank(item) > _rank(merged[positions[item_key]]):
            merged[positions[item_key]] = item
    return merged


class StateReducer:
    """Applies per-field merge policies."""

    def __init__(self, field_policies: Mapping[str, OutputField] | None = None):
        self._policies = dict(field_policies or {})

    def merge(
        self,
        current_state: Mapping[str, Any],
        step: StepSpec,
        partial_output: Mapping[str, Any],
    ) -> dict[str, Any]:
        """
        Merge a step's output into the state.

        Args:
            current_state: State before the merge (left untouched)
            step: The step that produced the output
            partial_output: Field updates returned by the step

        Returns:
            The new state

        Raises:
            UndeclaredOutputField: If the output has fields the step did not declare
        """
        undeclared = [name for name in partial_output if name not in step.output_keys]
        if undeclared:
            raise UndeclaredOutputField(step.id, undeclared)

        new_state = dict(current_state)
        for name, value in partial_output.items():
            output_field = self._policies.get(name) or step.get_field(name)
            value = copy.deepcopy(value)

            if output_field.policy == MergePolicy.OVERWRITE:
                new_state[name] = value
            elif output_field.policy == MergePolicy.APPEND_LIST:
                new_state[name] = _as_list(new_state.get(name)) + _as_list(value)
            elif output_field.policy == MergePolicy.UNION_BY_KEY:
                new_state[name] = union_by_key(
                    _as_list(new_state.get(name)), _as_list(value), output_field.key or ""
                )

        logger.debug(f"Merged {sorted(partial_output)} from step '{step.id}'")
        return new_state


def merge(
    current_state: Mapping[str, Any],
    step: StepSpec,
    partial_output: Mapping[str, Any],
) -> dict[str, Any]:
    """Merge using only the step's own field declarations."""
    return StateReducer().merge(current_state, step, partial_output)
