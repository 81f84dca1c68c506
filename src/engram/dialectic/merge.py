"""Majority/exception split used by the synthesis step."""

from __future__ import annotations

from engram.types import Condition

_EPS = 1e-9

# Context keys that never make a useful exception condition.
_IGNORED = {"tool"}


def _share(contexts: list[dict[str, str]], key: str, value: str) -> float:
    if not contexts:
        return 0.0
    return sum(1 for c in contexts if c.get(key) == value) / len(contexts)


def distinguishing_conditions(
    majority: list[dict[str, str]],
    exceptions: list[dict[str, str]],
    min_gap: float = 0.5,
) -> list[Condition]:
    """Key/value pairs whose share differs most between the two partitions.

    Pairs present in the exceptions win over pairs missing from them; the
    latter become negated conditions only when no positive one qualifies.
    Empty when nothing clears ``min_gap``.
    """
    pairs = sorted({
        (k, v) for ctx in (*majority, *exceptions) for k, v in ctx.items() if k not in _IGNORED
    })
    positive: list[tuple[float, Condition]] = []
    negative: list[tuple[float, Condition]] = []
    for key, value in pairs:
        gap = _share(exceptions, key, value) - _share(majority, key, value)
        if gap >= min_gap - _EPS:
            positive.append((gap, Condition(key=key, value=value)))
        elif -gap >= min_gap - _EPS:
            negative.append((-gap, Condition(key=key, value=value, negated=True)))
    chosen = positive or negative
    if not chosen:
        return []
    best = max(g for g, _ in chosen)
    return [c for g, c in chosen if g >= best - _EPS]
