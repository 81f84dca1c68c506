"""Dialectic Engine: thesis, antithesis and synthesis for each pattern.

Every evaluation works on a copy of one pattern and commits it in a single
transaction, so evaluations of different patterns can run concurrently and a
cancelled cycle leaves each pattern either fully updated or untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from engram.config import DialecticConfig
from engram.dialectic.confidence import pattern_score
from engram.dialectic.merge import distinguishing_conditions
from engram.dialectic.states import check_transition
from engram.dialectic.summarizer import Summarizer
from engram.exceptions import InsufficientEvidence
from engram.memory.store import MemoryStore
from engram.patterns.features import (
    Observation,
    build_claim,
    claim_outcome,
    observation_outcome,
    observe,
)
from engram.patterns.table import Membership, PatternTable
from engram.storage.sqlite_store import SQLiteStore
from engram.types import MemberRole, Memory, Pattern, PatternState
from engram.utils import jaccard, utcnow

logger = structlog.get_logger(__name__)

S = PatternState


@dataclass
class Evaluation:
    pattern_id: int
    supported: list[int] = field(default_factory=list)
    excepted: list[int] = field(default_factory=list)
    contradicted: list[int] = field(default_factory=list)
    missing: list[int] = field(default_factory=list)
    transitions: list[tuple[PatternState, PatternState, str]] = field(default_factory=list)
    state: PatternState | None = None
    confidence: float = 0.0


class DialecticEngine:
    def __init__(
        self,
        store: SQLiteStore,
        patterns: PatternTable,
        memories: MemoryStore,
        summarizer: Summarizer,
        config: DialecticConfig | None = None,
        sequence_window_seconds: float = 120.0,
    ) -> None:
        self.store = store
        self.patterns = patterns
        self.memories = memories
        self.summarizer = summarizer
        self.config = config or DialecticConfig()
        self.window = sequence_window_seconds

    # --- helpers ---

    def _load(self, memory_ids: list[int], pattern_id: int | None = None) -> tuple[list[Memory], list[int]]:
        found = self.store.get_memories(memory_ids)
        missing = [mid for mid in memory_ids if mid not in found]
        if missing:
            logger.warning("evidence_missing", pattern_id=pattern_id, memory_ids=missing)
        return [found[mid] for mid in memory_ids if mid in found], missing

    def _observe(self, memories: list[Memory]) -> list[Observation]:
        return [observe(self.store, m, self.window) for m in memories]

    def contradicts(self, pattern: Pattern, obs: Observation) -> bool:
        """Divergence in action or outcome fields, measured like attachment overlap."""
        claim = pattern.claim
        overlap = jaccard(claim_outcome(claim), observation_outcome(obs, claim.relation))
        return overlap < self.config.contradiction_threshold

    def _confidence(self, pattern: Pattern) -> float:
        return pattern_score(pattern, prior_smoothing=self.config.prior_smoothing)

    # --- entry points ---

    async def seed(self, memory_ids: list[int], now: datetime | None = None) -> Evaluation | None:
        """Create a candidate from a same-batch group, promoting it if it is large enough."""
        now = now or utcnow()
        memories, _ = self._load(memory_ids)
        memories = [m for m in memories if self.patterns.owner_of(m.id) is None]
        if not memories:
            return None
        claim = build_claim(self._observe(memories))
        newest = max(m.created_at for m in memories)
        pattern = Pattern(
            state=S.CANDIDATE,
            claim=claim,
            statement=await self.summarizer.summarize(claim, memories),
            evidence_ids=[m.id for m in memories],
            created_at=now,
            updated_at=now,
            reinforced_at=newest,
            last_evidence_at=newest,
        )
        pattern.confidence = self._confidence(pattern)
        created = self.patterns.create(
            pattern,
            [Membership(m.id, MemberRole.EVIDENCE, now) for m in memories],
        )
        logger.info("candidate_seeded", pattern_id=created.id, evidence=created.evidence_count,
                    action=claim.action)
        return await self.evaluate(created.id, [], now)

    async def evaluate(self, pattern_id: int, new_memory_ids: list[int],
                       now: datetime | None = None) -> Evaluation:
        now = now or utcnow()
        result = Evaluation(pattern_id=pattern_id)
        pattern = self.patterns.get(pattern_id)
        if pattern is None or pattern.state is S.RETIRED:
            return result

        memories, result.missing = self._load(new_memory_ids, pattern_id)
        fresh = [m for m in memories if self.patterns.owner_of(m.id) is None]
        prior_supporting = list(pattern.supporting_ids)
        members: list[Membership] = []
        resolved: list[int] = []

        for memory, obs in zip(fresh, self._observe(fresh)):
            if pattern.state is S.CANDIDATE:
                pattern.evidence_ids.append(memory.id)
                members.append(Membership(memory.id, MemberRole.EVIDENCE, now))
                result.supported.append(memory.id)
            elif pattern.claim.excepted(obs.context):
                # Already explained by a condition of the synthesized statement.
                pattern.counter_ids.append(memory.id)
                pattern.resolved_ids.append(memory.id)
                members.append(Membership(memory.id, MemberRole.COUNTER, now, resolved=True))
                result.excepted.append(memory.id)
            elif self.contradicts(pattern, obs):
                pattern.counter_ids.append(memory.id)
                pattern.contradiction_count += 1
                members.append(Membership(memory.id, MemberRole.COUNTER, now))
                result.contradicted.append(memory.id)
            else:
                pattern.evidence_ids.append(memory.id)
                members.append(Membership(memory.id, MemberRole.EVIDENCE, now))
                result.supported.append(memory.id)
            if memory.created_at > pattern.last_evidence_at:
                pattern.last_evidence_at = memory.created_at

        reinforce_at = max((m.created_at for m in fresh), default=None)
        if reinforce_at is not None and reinforce_at > pattern.reinforced_at:
            pattern.reinforced_at = reinforce_at

        transitions = result.transitions

        def move(target: PatternState, reason: str) -> None:
            check_transition(pattern, target, self.config.min_evidence)
            transitions.append((pattern.state, target, reason))
            pattern.state = target

        try:
            if pattern.state is S.CANDIDATE:
                await self._refresh_candidate(pattern, move)
            elif result.contradicted:
                if pattern.state in (S.THESIS, S.SYNTHESIS):
                    move(S.ANTITHESIS, f"contradicted by {result.contradicted}")
                elif pattern.state is S.PUBLISHED:
                    move(S.SYNTHESIS, f"published pattern reopened by {result.contradicted}")

            if pattern.state is S.ANTITHESIS or (pattern.state is S.SYNTHESIS and result.contradicted):
                await self._merge(pattern, move, resolved)
            elif pattern.state is S.THESIS and self._uncontested(pattern):
                move(S.SYNTHESIS, "uncontested evidence threshold")
        except InsufficientEvidence as exc:
            logger.info("pattern_held", pattern_id=pattern_id, state=pattern.state.value,
                        evidence=exc.evidence, required=exc.required)

        pattern.confidence = self._confidence(pattern)

        with self.store.transaction():
            if reinforce_at is not None:
                for mid in prior_supporting:
                    self.memories.reinforce(mid, reinforce_at)
            self.patterns.commit(pattern, members, resolved, transitions)

        result.state = pattern.state
        result.confidence = pattern.confidence
        for src, dst, _ in transitions:
            logger.info("pattern_transition", pattern_id=pattern_id, src=src.value, dst=dst.value,
                        confidence=round(pattern.confidence, 4))
        return result

    # --- steps ---

    async def _refresh_candidate(self, pattern: Pattern, move) -> None:
        memories, _ = self._load(pattern.evidence_ids, pattern.id)
        if not memories:
            return
        pattern.claim = build_claim(self._observe(memories))
        if pattern.evidence_count >= self.config.min_evidence:
            pattern.statement = await self.summarizer.summarize(pattern.claim, memories)
            move(S.THESIS, "evidence threshold reached")

    def _uncontested(self, pattern: Pattern) -> bool:
        need = self.config.uncontested_synthesis_evidence
        return bool(need) and not pattern.open_counter_ids and pattern.evidence_count >= need

    async def _merge(self, pattern: Pattern, move, resolved: list[int]) -> None:
        """Split evidence into majority and exceptions and condition the statement."""
        open_ids = pattern.open_counter_ids
        if not open_ids:
            if pattern.state is S.ANTITHESIS:
                move(S.SYNTHESIS, "no open contradictions")
            return
        majority, _ = self._load(pattern.evidence_ids, pattern.id)
        exceptions, _ = self._load(open_ids, pattern.id)
        if not exceptions:
            return
        if len(exceptions) >= len(majority):
            logger.info("merge_no_majority", pattern_id=pattern.id,
                        majority=len(majority), exceptions=len(exceptions))
            if pattern.state is S.SYNTHESIS:
                move(S.ANTITHESIS, "no majority after contradiction")
            return

        maj_obs = self._observe(majority)
        exc_obs = self._observe(exceptions)
        conditions = distinguishing_conditions(
            [o.context for o in maj_obs],
            [o.context for o in exc_obs],
            min_gap=self.config.min_discrimination,
        )
        if conditions:
            known = {(c.key, c.value, c.negated) for c in pattern.claim.exceptions}
            for cond in conditions:
                if (cond.key, cond.value, cond.negated) not in known:
                    pattern.claim.exceptions.append(cond)
            ids = [o.memory_id for o in exc_obs]
            pattern.resolved_ids.extend(i for i in ids if i not in pattern.resolved_ids)
            resolved.extend(ids)
            pattern.statement = await self.summarizer.summarize(pattern.claim, majority)
            reason = "conditioned on " + ", ".join(c.render() for c in conditions)
        else:
            pattern.claim.noise = True
            reason = "no distinguishing key, kept statement"
            logger.info("merge_noise", pattern_id=pattern.id, exceptions=len(exceptions))
        if pattern.state is S.ANTITHESIS:
            move(S.SYNTHESIS, reason)
