"""Observations and claims: the structured view of memories used for matching."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from engram.capture.encoder import action_of, context_of
from engram.storage.sqlite_store import SQLiteStore
from engram.types import Memory, PatternClaim, Relation


@dataclass
class Observation:
    memory_id: int
    action: str
    preceded_by: str | None = None
    followed_by: str | None = None
    failed: bool = False
    context: dict[str, str] = field(default_factory=dict)

    def related(self, relation: Relation) -> str | None:
        if relation is Relation.PRECEDED_BY:
            return self.preceded_by
        if relation is Relation.FOLLOWED_BY:
            return self.followed_by
        return None


def _label(memory: Memory | None) -> str | None:
    if memory is None:
        return None
    return action_of(memory.tool_name, memory.key_dict())


def observe(store: SQLiteStore, memory: Memory, window_seconds: float) -> Observation:
    keys = memory.key_dict()
    return Observation(
        memory_id=memory.id,
        action=action_of(memory.tool_name, keys),
        preceded_by=_label(store.neighbor(memory, window_seconds, before=True)),
        followed_by=_label(store.neighbor(memory, window_seconds, before=False)),
        failed=keys.get("outcome") == "failure",
        context=context_of(memory.tool_name, keys),
    )


def _majority(values: list[str | None], total: int) -> tuple[str | None, float]:
    counts = Counter(v for v in values if v)
    if not counts or total == 0:
        return None, 0.0
    value, n = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0]
    return value, n / total


def build_claim(observations: list[Observation]) -> PatternClaim:
    """Derive the majority claim. Deterministic for a given set of observations."""
    total = len(observations)
    action, _ = _majority([o.action for o in observations], total)
    pre, pre_ratio = _majority([o.preceded_by for o in observations], total)
    post, post_ratio = _majority([o.followed_by for o in observations], total)

    relation, related = Relation.NONE, None
    if max(pre_ratio, post_ratio) > 0.5:
        if post_ratio >= pre_ratio:
            relation, related = Relation.FOLLOWED_BY, post
        else:
            relation, related = Relation.PRECEDED_BY, pre

    pairs = Counter((k, v) for o in observations for k, v in o.context.items())
    context = {k: v for (k, v), n in sorted(pairs.items()) if n * 2 > total}
    failed = sum(o.failed for o in observations) * 2 > total
    return PatternClaim(
        action=action or "",
        relation=relation,
        related_action=related,
        failed=failed,
        context=context,
    )


def claim_outcome(claim: PatternClaim) -> set[str]:
    fields = {f"action={claim.action}", f"outcome={'failure' if claim.failed else 'success'}"}
    if claim.relation is not Relation.NONE:
        fields.add(f"{claim.relation.value}={claim.related_action or ''}")
    return fields


def observation_outcome(obs: Observation, relation: Relation) -> set[str]:
    fields = {f"action={obs.action}", f"outcome={'failure' if obs.failed else 'success'}"}
    if relation is not Relation.NONE:
        fields.add(f"{relation.value}={obs.related(relation) or ''}")
    return fields


def context_pairs(context: dict[str, str]) -> set[tuple[str, str]]:
    return set(context.items())
