"""Confidence scoring.

A pure function of the counts. Callers never assign confidence by hand.
"""

from __future__ import annotations

from engram.types import Pattern


def score(
    evidence: int,
    open_contradictions: int,
    prior_smoothing: float = 1.0,
    idle_sessions: int = 0,
    session_decay: float = 1.0,
) -> float:
    denom = evidence + open_contradictions + prior_smoothing
    base = evidence / denom if denom > 0 else 0.0
    if idle_sessions > 0:
        base *= session_decay ** idle_sessions
    return min(1.0, max(0.0, base))


def pattern_score(pattern: Pattern, prior_smoothing: float = 1.0, idle_sessions: int = 0,
                  session_decay: float = 1.0) -> float:
    return score(
        pattern.evidence_count,
        len(pattern.open_counter_ids),
        prior_smoothing=prior_smoothing,
        idle_sessions=idle_sessions,
        session_decay=session_decay,
    )
