from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import bash, pattern_for, scenario_a, scenario_b
from engram.publish.formatter import parse_metadata
from engram.types import NoOp, PatternState, RuleRef, RuleStatus


def test_recurring_sequence_becomes_thesis(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        report = await eg.consolidate()

        assert report is not None and report.skipped is None
        assert len(report.seeded) == 2
        git = pattern_for(eg, "git commit")
        assert git is not None
        assert git.state is PatternState.THESIS
        assert git.evidence_count == 3
        assert git.confidence == pytest.approx(0.75)
        assert git.statement == "`git commit` is preceded by `bun test`"

        bun = pattern_for(eg, "bun test")
        assert bun.state is PatternState.THESIS
        assert bun.statement == "`bun test` is followed by `git commit`"
        assert (git.id, "candidate", "thesis") in report.transitions

    asyncio.run(_run())


def test_contradiction_is_merged_into_conditional_synthesis(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        await eg.consolidate()
        scenario_b(eg, base_time)
        report = await eg.consolidate()

        git = pattern_for(eg, "git commit")
        assert report.attached == 1
        assert report.contradictions == 1
        assert (git.id, "thesis", "antithesis") in report.transitions
        assert (git.id, "antithesis", "synthesis") in report.transitions
        assert git.state is PatternState.SYNTHESIS
        assert git.contradiction_count == 1
        assert git.evidence_count == 4
        assert git.open_counter_ids == []
        assert git.confidence == pytest.approx(0.8)
        assert "except when docs-only=true" in git.statement
        # Contradictions never drop evidence.
        assert len(git.evidence_ids) == 3

        history = eg.store.list_audit_events(target_type="pattern", target_id=str(git.id))
        details = [e.detail for e in history if e.action == "transition"]
        assert any(d.startswith("thesis->antithesis") for d in details)
        assert any(d.startswith("antithesis->synthesis") for d in details)

    asyncio.run(_run())


def test_publish_once_then_noop(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        await eg.consolidate()
        scenario_b(eg, base_time)
        await eg.consolidate()
        git = pattern_for(eg, "git commit")

        [first] = await eg.publish(git.id)
        assert isinstance(first, RuleRef)
        assert first.version == 1
        text = Path(first.path).read_text()
        assert "except when docs-only=true" in text
        meta = parse_metadata(text)
        assert meta["pattern_id"] == git.id
        assert meta["version"] == 1
        assert meta["confidence"] == pytest.approx(0.8)
        assert eg.patterns.get(git.id).state is PatternState.PUBLISHED

        [again] = await eg.publish(git.id)
        assert again == NoOp(pattern_id=git.id, reason="unchanged")

        eg.config.publish.auto_publish = True
        report = await eg.consolidate()
        assert report.published == []
        assert NoOp(pattern_id=git.id, reason="unchanged") in report.noops

        rules = eg.store.list_rules()
        assert [(r.version, r.status) for r in rules] == [(1, RuleStatus.ACTIVE)]

    asyncio.run(_run())


def test_new_contradiction_reopens_published_rule_as_version_two(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        await eg.consolidate()
        scenario_b(eg, base_time)
        await eg.consolidate()
        git = pattern_for(eg, "git commit")
        [v1] = await eg.publish(git.id)
        assert v1.version == 1

        eg.capture(bash("s1", "git commit -m fix", base_time + timedelta(seconds=3000),
                        keys={"hotfix": "true"}))
        report = await eg.consolidate()
        assert (git.id, "published", "synthesis") in report.transitions
        git = pattern_for(eg, "git commit")
        assert git.state is PatternState.SYNTHESIS
        assert git.contradiction_count == 2
        assert git.statement.endswith("except when docs-only=true or hotfix=true")

        [v2] = await eg.publish(git.id)
        assert isinstance(v2, RuleRef)
        assert v2.version == 2
        assert parse_metadata(Path(v2.path).read_text())["version"] == 2
        rules = sorted(eg.store.list_rules(), key=lambda r: r.version)
        assert [(r.version, r.status) for r in rules] == [
            (1, RuleStatus.SUPERSEDED), (2, RuleStatus.ACTIVE),
        ]

    asyncio.run(_run())


def test_auto_publish_during_cycle(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory(auto_publish=True)
        scenario_a(eg, base_time)
        first = await eg.consolidate()
        # Theses are not published.
        assert first.published == []
        scenario_b(eg, base_time)
        second = await eg.consolidate()
        git = pattern_for(eg, "git commit")
        assert [ref.pattern_id for ref in second.published] == [git.id]
        assert git.state is PatternState.PUBLISHED
        assert git.version == 1

    asyncio.run(_run())


def test_idle_pattern_retires_after_ten_sessions(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        await eg.consolidate()
        start = base_time + timedelta(hours=1)
        for i in range(9):
            eg.start_session(f"idle-{i}", start + timedelta(minutes=i))

        result = eg.lifecycle.run()
        assert result.retired == []
        assert pattern_for(eg, "git commit").state is PatternState.THESIS

        eg.start_session("idle-9", start + timedelta(minutes=9))
        report = await eg.consolidate()
        git = pattern_for(eg, "git commit")
        assert git.state is PatternState.RETIRED
        assert git.id in report.retired
        # Stored confidence stays count-pure; the audit keeps 0.75 * 0.85 ** 10.
        assert git.confidence == pytest.approx(0.75)
        history = eg.store.list_audit_events(target_type="pattern", target_id=str(git.id))
        assert any(e.detail == "thesis->retired: confidence 0.148 after 10 idle sessions"
                   for e in history if e.action == "transition")

    asyncio.run(_run())


def test_pattern_table_rebuilt_after_restart(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        await eg.consolidate()
        before = {p.id: (p.state, p.statement, p.evidence_ids) for p in eg.patterns.all()}
        await eg.close()

        reopened = engram_factory()
        after = {p.id: (p.state, p.statement, p.evidence_ids) for p in reopened.patterns.all()}
        assert after == before
        assert reopened.index.size == reopened.store.count_vectors() == 6

    asyncio.run(_run())
