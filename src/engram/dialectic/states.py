"""Pattern state machine."""

from __future__ import annotations

from engram.exceptions import InsufficientEvidence, InvalidTransition
from engram.types import Pattern, PatternState

S = PatternState

TRANSITIONS: dict[PatternState, frozenset[PatternState]] = {
    S.CANDIDATE: frozenset({S.THESIS, S.RETIRED}),
    S.THESIS: frozenset({S.ANTITHESIS, S.SYNTHESIS, S.RETIRED}),
    S.ANTITHESIS: frozenset({S.SYNTHESIS, S.RETIRED}),
    S.SYNTHESIS: frozenset({S.ANTITHESIS, S.PUBLISHED, S.RETIRED}),
    S.PUBLISHED: frozenset({S.SYNTHESIS, S.RETIRED}),
    S.RETIRED: frozenset(),
}


def can_transition(current: PatternState, target: PatternState) -> bool:
    return target in TRANSITIONS[current]


def check_transition(
    pattern: Pattern,
    target: PatternState,
    min_evidence: int,
    min_confidence: float | None = None,
) -> None:
    """Validate a move, including the evidence guards on synthesis and published."""
    if not can_transition(pattern.state, target):
        raise InvalidTransition(
            "pattern transition not allowed",
            {"pattern_id": pattern.id, "from": pattern.state.value, "to": target.value},
        )
    if target in (S.SYNTHESIS, S.PUBLISHED) and pattern.evidence_count < min_evidence:
        raise InsufficientEvidence(pattern.id, pattern.evidence_count, min_evidence)
    if target is S.PUBLISHED and min_confidence is not None and pattern.confidence < min_confidence:
        raise InsufficientEvidence(
            pattern.id, pattern.evidence_count, min_evidence, confidence=pattern.confidence
        )
