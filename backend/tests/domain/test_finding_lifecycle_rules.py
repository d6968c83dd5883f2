"""Test the pure finding lifecycle classification and replay."""

import pytest

from tonaudit.domain.enums import LifecycleTransition
from tonaudit.domain.finding_lifecycle import (
    INITIAL_STATUS,
    TransitionDecision,
    compute_transitions,
    is_open,
    replay_status,
)

pytestmark = pytest.mark.unit


def _as_dict(decisions: list[TransitionDecision]) -> dict:
    return {decision.finding_id: decision.transition for decision in decisions}


def test_finding_in_both_runs_is_unchanged():
    decisions = compute_transitions(["a"], ["a"])

    assert _as_dict(decisions) == {"a": LifecycleTransition.UNCHANGED}


def test_finding_only_in_previous_run_is_resolved():
    decisions = compute_transitions(["a", "b"], ["b"])

    assert _as_dict(decisions)["a"] == LifecycleTransition.RESOLVED


def test_new_finding_is_opened():
    decisions = compute_transitions([], ["a"])

    assert _as_dict(decisions) == {"a": LifecycleTransition.OPENED}


def test_previously_resolved_finding_is_regressed():
    decisions = compute_transitions([], ["a"], ever_resolved_ids=["a"])

    assert _as_dict(decisions) == {"a": LifecycleTransition.REGRESSED}


def test_ever_resolved_does_not_override_unchanged():
    """A finding present in both runs stays unchanged even with a resolved past."""
    decisions = compute_transitions(["a"], ["a"], ever_resolved_ids=["a"])

    assert _as_dict(decisions) == {"a": LifecycleTransition.UNCHANGED}


def test_union_is_ordered_current_first_then_previous_only():
    decisions = compute_transitions(["x", "b"], ["b", "c"])

    assert [decision.finding_id for decision in decisions] == ["b", "c", "x"]
    assert [decision.transition for decision in decisions] == [
        LifecycleTransition.UNCHANGED,
        LifecycleTransition.OPENED,
        LifecycleTransition.RESOLVED,
    ]


def test_duplicate_ids_produce_one_decision_each():
    decisions = compute_transitions(["a", "a"], ["a", "b", "b"])

    assert len(decisions) == 2


def test_empty_runs_produce_no_decisions():
    assert compute_transitions([], []) == []


def test_replay_without_edges_is_opened():
    assert replay_status([]) == INITIAL_STATUS == LifecycleTransition.OPENED


def test_replay_returns_last_edge():
    edges = [LifecycleTransition.UNCHANGED, LifecycleTransition.RESOLVED, "regressed"]

    assert replay_status(edges) == LifecycleTransition.REGRESSED


def test_is_open():
    assert is_open(LifecycleTransition.OPENED)
    assert is_open(LifecycleTransition.REGRESSED)
    assert is_open(LifecycleTransition.UNCHANGED)
    assert not is_open(LifecycleTransition.RESOLVED)
