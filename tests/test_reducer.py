"""
Tests for the StateReducer.

Covers:
- overwrite, append_list and union_by_key policies
- Purity: neither the input state nor the step output is mutated
- Undeclared output fields
- Merge order independence for union_by_key and append_list contents
"""

import itertools

import pytest

from lcagraph.graph import (
    MergePolicy,
    OutputField,
    StateReducer,
    StepSpec,
    UndeclaredOutputField,
    merge,
    union_by_key,
)

SOURCES = OutputField(name="referenceSources", policy=MergePolicy.UNION_BY_KEY, key="url")


def spec(step_id: str, *fields: OutputField) -> StepSpec:
    return StepSpec(id=step_id, work=lambda inputs: {}, output_fields=list(fields))


def source(url: str, score: float | None = None, title: str = "") -> dict:
    return {"title": title or url, "url": url, "content": "", "score": score}


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def test_overwrite_replaces_value():
    step = spec("a", OutputField(name="summary"))
    state = merge({"summary": "old"}, step, {"summary": "new"})
    assert state == {"summary": "new"}


def test_append_list_concatenates_in_merge_order():
    step = spec("e", OutputField(name="emissionSources", policy=MergePolicy.APPEND_LIST))
    state = merge({}, step, {"emissionSources": [{"name": "CO2"}]})
    state = merge(state, step, {"emissionSources": [{"name": "CH4"}, {"name": "N2O"}]})
    assert [s["name"] for s in state["emissionSources"]] == ["CO2", "CH4", "N2O"]


def test_append_list_wraps_single_value():
    step = spec("e", OutputField(name="log", policy=MergePolicy.APPEND_LIST))
    state = merge({"log": ["first"]}, step, {"log": "second"})
    assert state["log"] == ["first", "second"]


def test_union_by_key_deduplicates():
    step = spec("a", SOURCES)
    state = merge({"referenceSources": [source("u1"), source("u2")]}, step, {
        "referenceSources": [source("u2"), source("u3")]
    })
    assert [s["url"] for s in state["referenceSources"]] == ["u1", "u2", "u3"]


def test_union_by_key_keeps_higher_score():
    merged = union_by_key(
        [source("u1", 0.2, title="weak")], [source("u1", 0.9, title="strong")], "url"
    )
    assert len(merged) == 1
    assert merged[0]["title"] == "strong"


@pytest.mark.parametrize("score", [0.5, None])
def test_union_by_key_tie_is_independent_of_arrival(score):
    first = source("u1", score, title="from getBasicInfo")
    second = source("u1", score, title="from getSupplier")

    forward = union_by_key([first], [second], "url")
    backward = union_by_key([second], [first], "url")

    assert len(forward) == 1
    assert forward == backward


def test_union_by_key_keeps_items_without_key():
    merged = union_by_key([{"title": "no url"}], [{"title": "also none", "url": ""}], "url")
    assert len(merged) == 2


def test_union_by_key_reads_attributes():
    class Item:
        def __init__(self, url, score):
            self.url = url
            self.score = score

    merged = union_by_key([Item("u", 0.1)], [Item("u", 0.3)], "url")
    assert merged[0].score == 0.3


def test_field_policy_from_graph_wins():
    reducer = StateReducer({"items": OutputField(name="items", policy=MergePolicy.APPEND_LIST)})
    step = spec("a", OutputField(name="items", policy=MergePolicy.APPEND_LIST))
    state = reducer.merge({"items": [1]}, step, {"items": [2]})
    assert state["items"] == [1, 2]


# ---------------------------------------------------------------------------
# Purity and errors
# ---------------------------------------------------------------------------


def test_merge_is_pure():
    step = spec("a", SOURCES, OutputField(name="summary"))
    current = {"referenceSources": [source("u1")], "summary": "old"}
    output = {"referenceSources": [source("u2")], "summary": {"text": "new"}}

    state = merge(current, step, output)
    output["summary"]["text"] = "mutated"

    assert current == {"referenceSources": [source("u1")], "summary": "old"}
    assert state["summary"] == {"text": "new"}
    assert state is not current


def test_untouched_fields_are_kept():
    step = spec("a", OutputField(name="x"))
    assert merge({"productName": "Solar Panel"}, step, {"x": 1}) == {
        "productName": "Solar Panel",
        "x": 1,
    }


def test_undeclared_output_field_raises():
    step = spec("getComponent", OutputField(name="productComponent"))
    with pytest.raises(UndeclaredOutputField) as exc_info:
        merge({}, step, {"productComponent": "glass", "processesList": []})
    assert exc_info.value.step_id == "getComponent"
    assert exc_info.value.fields == ["processesList"]


# ---------------------------------------------------------------------------
# Order independence
# ---------------------------------------------------------------------------


def test_union_merge_is_order_independent_as_a_set():
    steps = {
        "getBasicInfo": [source("u1", 0.4), source("u2", 0.7)],
        "getComponent": [source("u2", 0.9), source("u3", 0.1)],
        "getSupplier": [source("u4", 0.5), source("u1", 0.4)],
    }
    results = []
    for order in itertools.permutations(steps):
        state: dict = {}
        for step_id in order:
            state = merge(state, spec(step_id, SOURCES), {"referenceSources": steps[step_id]})
        results.append({(s["url"], s["score"]) for s in state["referenceSources"]})

    assert all(result == results[0] for result in results)
    assert results[0] == {("u1", 0.4), ("u2", 0.9), ("u3", 0.1), ("u4", 0.5)}


@pytest.mark.parametrize("score", [0.6, None])
def test_union_merge_with_equal_scores_is_order_independent(score):
    steps = {
        "getBasicInfo": [source("u1", score, title="datasheet"), source("u2", 0.3)],
        "getComponent": [source("u1", score, title="catalogue")],
        "getSupplier": [source("u1", score, title="annual report"), source("u3")],
    }
    results = []
    for order in itertools.permutations(steps):
        state: dict = {}
        for step_id in order:
            state = merge(state, spec(step_id, SOURCES), {"referenceSources": steps[step_id]})
        results.append(sorted(state["referenceSources"], key=lambda s: s["url"]))

    assert all(result == results[0] for result in results)
    assert [s["url"] for s in results[0]] == ["u1", "u2", "u3"]


def test_append_merge_contents_are_order_independent():
    field = OutputField(name="emissionSources", policy=MergePolicy.APPEND_LIST)
    contributions = {"a": ["CO2"], "b": ["CH4"], "c": ["N2O", "SF6"]}
    seen = set()
    for order in itertools.permutations(contributions):
        state: dict = {}
        for step_id in order:
            state = merge(state, spec(step_id, field), {"emissionSources": contributions[step_id]})
        seen.add(tuple(sorted(state["emissionSources"])))
    assert seen == {("CH4", "CO2", "N2O", "SF6")}
