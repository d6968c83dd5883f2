"""Finding lifecycle classification and replay.

Pure domain logic with no external dependencies. The persistence side lives
in tonaudit.services.finding_lifecycle_service.
"""

from collections.abc import Hashable, Iterable
from dataclasses import dataclass

from tonaudit.domain.enums import LifecycleTransition

# Status a Finding starts with before any transition edge exists
INITIAL_STATUS = LifecycleTransition.OPENED


@dataclass(frozen=True)
class TransitionDecision:
    """Classification of one finding between two consecutive completed runs."""

    finding_id: Hashable
    transition: LifecycleTransition


def compute_transitions(
    previous_ids: Iterable[Hashable],
    current_ids: Iterable[Hashable],
    ever_resolved_ids: Iterable[Hashable] = (),
) -> list[TransitionDecision]:
    """Classify every finding present in either run.

    Pure function -- no side effects, no DB access.

    Args:
        previous_ids: Findings reported by the previous completed run
        current_ids: Findings reported by the run being completed
        ever_resolved_ids: Findings that were resolved at some earlier point

    Returns:
        One TransitionDecision per finding in the union, in a stable order
        (current run order first, then findings only seen previously).

    Rules:
        - in both runs -> UNCHANGED
        - previous only -> RESOLVED
        - current only, resolved before -> REGRESSED
        - current only, never resolved -> OPENED
        - in neither -> nothing (not part of the union)
    """
    previous = list(dict.fromkeys(previous_ids))
    current = list(dict.fromkeys(current_ids))
    previous_set = set(previous)
    current_set = set(current)
    ever_resolved = set(ever_resolved_ids)

    decisions: list[TransitionDecision] = []
    for finding_id in current:
        if finding_id in previous_set:
            transition = LifecycleTransition.UNCHANGED
        elif finding_id in ever_resolved:
            transition = LifecycleTransition.REGRESSED
        else:
            transition = LifecycleTransition.OPENED
        decisions.append(TransitionDecision(finding_id, transition))

    for finding_id in previous:
        if finding_id not in current_set:
            decisions.append(TransitionDecision(finding_id, LifecycleTransition.RESOLVED))

    return decisions


def replay_status(transitions: Iterable[LifecycleTransition | str]) -> LifecycleTransition:
    """Replay a finding's transition edges (in completion order) into its status.

    A finding with no edges is OPENED: it was created by its first run.
    """
    status = INITIAL_STATUS
    for transition in transitions:
        status = LifecycleTransition(transition)
    return status


def is_open(status: LifecycleTransition) -> bool:
    """True when the finding was present in the latest run that classified it."""
    return status != LifecycleTransition.RESOLVED
