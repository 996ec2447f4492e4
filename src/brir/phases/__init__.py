"""Pipeline phases, transition aliases, and the precomputed lookup tables."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Mapping, Tuple


class Phase(str, Enum):
    """Enumeration of the pipeline lifecycle stages."""

    BRAINSTORMING = "brainstorming"
    REFINING = "refining"
    DISPATCHING = "dispatching"
    REVIEWING = "reviewing"
    REPORTING = "reporting"
    COMPLETE = "complete"


PHASE_SEQUENCE = [
    Phase.BRAINSTORMING,
    Phase.REFINING,
    Phase.DISPATCHING,
    Phase.REVIEWING,
    Phase.REPORTING,
    Phase.COMPLETE,
]

ITERATE = "iterate"
REPORT = "report"

# Aliases the agent may request, per phase. Phases with no entry only move
# automatically (dispatching -> reviewing, complete -> brainstorming).
TRANSITIONS: Mapping[Phase, Mapping[str, Phase]] = {
    Phase.BRAINSTORMING: {"refine": Phase.REFINING},
    Phase.REFINING: {"dispatch": Phase.DISPATCHING},
    Phase.DISPATCHING: {},
    Phase.REVIEWING: {ITERATE: Phase.DISPATCHING, REPORT: Phase.REPORTING},
    Phase.REPORTING: {"complete": Phase.COMPLETE},
    Phase.COMPLETE: {},
}

AUTO_TRANSITIONS: Mapping[Phase, Phase] = {
    Phase.DISPATCHING: Phase.REVIEWING,
    Phase.COMPLETE: Phase.BRAINSTORMING,
}


def _build_alias_targets() -> Dict[str, Phase]:
    targets: Dict[str, Phase] = {}
    for edges in TRANSITIONS.values():
        for alias, target in edges.items():
            targets.setdefault(alias, target)
    return targets


ALIAS_TARGETS: Mapping[str, Phase] = _build_alias_targets()
"""Every alias the agent may name, mapped to the phase it leads to."""

VALID_ALIASES: Tuple[str, ...] = tuple(ALIAS_TARGETS)

PHASE_ALIASES: Mapping[Phase, Tuple[str, ...]] = {
    phase: tuple(edges.keys()) for phase, edges in TRANSITIONS.items()
}
"""Reverse view of ``TRANSITIONS``: aliases reachable from each phase."""


def resolve_alias(phase: Phase, alias: str) -> Phase | None:
    """Return the phase ``alias`` leads to from ``phase`` or ``None`` if unreachable."""
    return TRANSITIONS[phase].get(alias)


def valid_aliases(phase: Phase) -> Tuple[str, ...]:
    """Return the aliases the agent may request while in ``phase``."""
    return PHASE_ALIASES[phase]


__all__ = [
    "ALIAS_TARGETS",
    "AUTO_TRANSITIONS",
    "ITERATE",
    "PHASE_ALIASES",
    "PHASE_SEQUENCE",
    "Phase",
    "REPORT",
    "TRANSITIONS",
    "VALID_ALIASES",
    "resolve_alias",
    "valid_aliases",
]
