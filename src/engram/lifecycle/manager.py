"""Lifecycle Manager: session-driven tier aging, expiry and pattern retirement.

Idleness is counted in sessions, not wall-clock time: a memory or pattern is
idle for N sessions when N sessions started after it was last reinforced.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from engram.config import DialecticConfig, LifecycleConfig
from engram.dialectic.confidence import pattern_score
from engram.dialectic.states import check_transition
from engram.exceptions import InvalidTransition
from engram.memory.store import MemoryStore
from engram.patterns.table import PatternTable
from engram.storage.faiss_store import SimilarityIndex
from engram.storage.sqlite_store import SQLiteStore
from engram.types import OPEN_STATES, Memory, PatternState, Tier
from engram.utils import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class LifecycleResult:
    promoted_short_term: int = 0
    promoted_long_term: int = 0
    expired: int = 0
    retired: list[int] = field(default_factory=list)
    transitions: list[tuple[int, str, str]] = field(default_factory=list)


class LifecycleManager:
    def __init__(
        self,
        store: SQLiteStore,
        memories: MemoryStore,
        patterns: PatternTable,
        config: LifecycleConfig | None = None,
        dialectic: DialecticConfig | None = None,
        index: SimilarityIndex | None = None,
    ) -> None:
        self.store = store
        self.memories = memories
        self.patterns = patterns
        self.config = config or LifecycleConfig()
        self.dialectic = dialectic or DialecticConfig()
        self.index = index
        self._starts: list[datetime] = []

    def idle_sessions(self, since: datetime) -> int:
        """Sessions started strictly after ``since``."""
        return len(self._starts) - bisect.bisect_right(self._starts, since)

    def decayed_confidence(self, pattern, idle: int) -> float:
        return pattern_score(
            pattern,
            prior_smoothing=self.dialectic.prior_smoothing,
            idle_sessions=idle,
            session_decay=self.config.session_decay,
        )

    def run(self, now: datetime | None = None) -> LifecycleResult:
        now = now or utcnow()
        self._starts = sorted(self.store.session_starts())
        result = LifecycleResult()

        published_evidence = {
            mid
            for p in self.patterns.all({PatternState.PUBLISHED})
            for mid in p.supporting_ids
        }

        for memory in self.memories.query_by_tier(Tier.WORKING):
            if self.idle_sessions(self._last_touch(memory)) >= 1:
                result.promoted_short_term += self._advance(memory, Tier.SHORT_TERM)

        for memory in self.memories.query_by_tier(Tier.SHORT_TERM):
            if memory.id in published_evidence:
                result.promoted_long_term += self._advance(memory, Tier.LONG_TERM)
            elif self._expirable(memory):
                self.memories.expire(memory.id)
                if self.index is not None:
                    self.index.remove(memory.id)
                result.expired += 1

        for pattern in self.patterns.open():
            idle = self.idle_sessions(pattern.reinforced_at)
            if idle < self.config.retire_after_sessions:
                continue
            decayed = self.decayed_confidence(pattern, idle)
            if decayed >= self.config.retire_floor:
                continue
            source = pattern.state
            check_transition(pattern, PatternState.RETIRED, self.dialectic.min_evidence)
            pattern.state = PatternState.RETIRED
            self.patterns.commit(
                pattern,
                transitions=[(source, PatternState.RETIRED,
                              f"confidence {decayed:.3f} after {idle} idle sessions")],
            )
            result.retired.append(pattern.id)
            result.transitions.append((pattern.id, source.value, PatternState.RETIRED.value))
            logger.info("pattern_retired", pattern_id=pattern.id, idle_sessions=idle,
                        confidence=round(decayed, 4))

        logger.info("lifecycle_run", short_term=result.promoted_short_term,
                    long_term=result.promoted_long_term, expired=result.expired,
                    retired=len(result.retired))
        return result

    @staticmethod
    def _last_touch(memory: Memory) -> datetime:
        return memory.reinforced_at or memory.created_at

    def _advance(self, memory: Memory, tier: Tier) -> bool:
        try:
            self.memories.touch(memory.id, tier)
        except InvalidTransition as exc:
            logger.warning("tier_move_rejected", memory_id=memory.id, error=str(exc))
            return False
        return True

    def _expirable(self, memory: Memory) -> bool:
        if self.idle_sessions(self._last_touch(memory)) < self.config.expiry_sessions:
            return False
        owner = self.patterns.owner_of(memory.id)
        if owner is None:
            return True
        pattern = self.patterns.get(owner)
        return pattern is None or pattern.state not in OPEN_STATES
