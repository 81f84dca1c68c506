from __future__ import annotations

import asyncio
from datetime import timedelta

from conftest import pattern_for, scenario_a
from engram.config import DetectorConfig
from engram.patterns.detector import PatternDetector
from engram.types import Memory, Pattern, PatternClaim, PatternState
from engram.utils import utcnow


class _Table:
    def __init__(self, patterns: list[Pattern]) -> None:
        self._patterns = patterns

    def open(self) -> list[Pattern]:
        return list(self._patterns)

    def owner_of(self, memory_id: int) -> int | None:
        return None


class _Index:
    def centroid(self, memory_ids):
        return None

    def vector(self, memory_id):
        return None


class _FlatScoreDetector(PatternDetector):
    """Every memory scores the same against every pattern."""

    def score(self, memory, pattern, centroid, last_evidence_at=None) -> float:
        return 0.9


def _open(pattern_id: int, confidence: float) -> Pattern:
    return Pattern(id=pattern_id, state=PatternState.THESIS,
                   claim=PatternClaim(action="git commit"), confidence=confidence)


def _memory() -> Memory:
    return Memory(id=1, session_id="s1", tool_name="Bash", content="git commit", created_at=utcnow())


def test_equal_scores_prefer_higher_confidence():
    patterns = [_open(4, 0.5), _open(9, 0.8)]
    detector = _FlatScoreDetector(None, _Index(), _Table(patterns), DetectorConfig())
    plan = detector.plan([_memory()])
    assert plan.assignments == {9: [1]}


def test_equal_scores_and_confidence_prefer_lower_id():
    patterns = [_open(9, 0.6), _open(4, 0.6)]
    detector = _FlatScoreDetector(None, _Index(), _Table(patterns), DetectorConfig())
    plan = detector.plan([_memory()])
    assert plan.assignments == {4: [1]}


def _read(i: int, at) -> dict:
    return {
        "session_id": "old",
        "tool_name": "Read",
        "tool_input": {"file_path": f"/repo/dir{i}/module.ext{i}"},
        "timestamp": at.isoformat(),
    }


def test_unclustered_backlog_does_not_hide_new_memories(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory(detector=DetectorConfig(batch_limit=6, leftover_limit=2))
        start = base_time - timedelta(hours=1)
        reads = [eg.capture(_read(i, start + timedelta(minutes=i))) for i in range(10)]

        first = await eg.consolidate()
        assert first.seeded == []
        second = await eg.consolidate()
        assert second.seeded == []
        assert all(eg.patterns.owner_of(m.id) is None for m in reads)

        scenario_a(eg, base_time)
        await eg.drain()
        batch = eg.detector.pending(utcnow())
        assert len(batch) == 8
        # Newest leftovers ride along with everything past the watermark.
        assert [m.id for m in batch[:2]] == [reads[8].id, reads[9].id]

        third = await eg.consolidate()
        assert len(third.seeded) == 2
        git = pattern_for(eg, "git commit")
        assert git is not None
        assert git.state is PatternState.THESIS

    asyncio.run(_run())
