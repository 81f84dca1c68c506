from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import pattern_for, scenario_a, scenario_b
from engram.exceptions import PublishConflict, PublishError
from engram.publish.formatter import parse_metadata, render, rule_filename, rule_hash, scope_globs
from engram.publish.publisher import Publisher
from engram.types import NoOp, PatternState, RuleArtifact, RuleRef, RuleStatus


async def _synthesized(eg, base_time):
    scenario_a(eg, base_time)
    await eg.consolidate()
    scenario_b(eg, base_time)
    await eg.consolidate()
    return pattern_for(eg, "git commit")


def test_scope_globs_and_hash():
    globs = scope_globs(["src/app/main.py", "/etc/x.conf", "README.md", ""])
    assert globs == ["**/*.conf", "**/*.md", "**/*.py", "/etc/**", "src/**"]
    assert rule_hash("stmt", ["b/**", "a/**"]) == rule_hash("stmt", ["a/**", "b/**"])
    assert rule_hash("stmt", []) != rule_hash("other", [])
    assert len(rule_hash("stmt", [])) == 16
    assert rule_filename("Run bun test before git commit", 3) == "run-bun-test-before-git-commit-p3.md"


def test_render_markdown_layout():
    artifact = RuleArtifact(
        pattern_id=7, version=2, confidence=0.8, statement="Run the tests first.",
        title="Run bun test before git commit", scope_globs=["**/*.ts"],
        when_to_apply=["command is `git`"], examples=['{"command":"git commit -m wip"}'],
        related_tools=["Bash"], session_count=3,
        published_at=datetime(2026, 5, 4, tzinfo=timezone.utc),
    )
    text = render(artifact)
    assert text.startswith('---\npaths:\n  - "**/*.ts"\n---\n')
    assert "# Run bun test before git commit\n\nRun the tests first.\n" in text
    assert "## When This Applies\n\n- command is `git`\n" in text
    assert "## Related Tools\n\n- `Bash`\n" in text
    assert "*This pattern was confirmed across 3 sessions.*" in text
    assert "<!-- engram:pattern:7:v2:2026-05-04:confidence:0.80 -->" in text
    assert parse_metadata(text) == {
        "pattern_id": 7, "version": 2, "date": "2026-05-04", "confidence": 0.8,
    }
    assert parse_metadata("# no metadata") is None


def test_only_synthesized_patterns_publish(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        scenario_a(eg, base_time)
        await eg.consolidate()
        bun = pattern_for(eg, "bun test")
        assert await eg.publisher.publish(bun.id) == NoOp(pattern_id=bun.id, reason="not_synthesized")
        assert await eg.publisher.publish(9999) == NoOp(pattern_id=9999, reason="not_found")

        scenario_b(eg, base_time)
        await eg.consolidate()
        git = pattern_for(eg, "git commit")
        eg.config.publish.min_confidence = 0.9
        assert await eg.publisher.publish(git.id) == NoOp(pattern_id=git.id,
                                                          reason="insufficient_evidence")
        assert eg.store.list_rules() == []

    asyncio.run(_run())


def test_external_edit_is_a_conflict_unless_forced(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        git = await _synthesized(eg, base_time)
        first = await eg.publisher.publish(git.id)
        path = Path(first.path)
        path.write_text(path.read_text() + "\nhand edit\n")

        changed = eg.patterns.get(git.id)
        changed.statement = "Always run `bun test` before `git commit`."
        eg.patterns.commit(changed)

        with pytest.raises(PublishConflict) as exc:
            await eg.publisher.publish(git.id)
        assert exc.value.path == first.path
        assert "hand edit" in path.read_text()

        second = await eg.publisher.publish(git.id, force=True)
        assert isinstance(second, RuleRef) and second.version == 2
        assert second.path == first.path
        assert "Always run `bun test`" in path.read_text()
        assert "hand edit" not in path.read_text()
        rules = eg.store.list_rules()
        assert [(r.version, r.status) for r in rules] == [
            (1, RuleStatus.SUPERSEDED), (2, RuleStatus.ACTIVE),
        ]

    asyncio.run(_run())


def test_deleted_artifact_is_rewritten_without_force(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        git = await _synthesized(eg, base_time)
        first = await eg.publisher.publish(git.id)
        Path(first.path).unlink()

        changed = eg.patterns.get(git.id)
        changed.statement = "Run `bun test` first."
        eg.patterns.commit(changed)
        second = await eg.publisher.publish(git.id)
        assert second.version == 2
        assert Path(second.path).exists()

    asyncio.run(_run())


class _BrokenWriter:
    def write(self, filename, content, previous=None):
        raise OSError("disk full")

    def remove(self, path):
        raise OSError("read-only")

    def current_hash(self, path):
        return None


def test_write_failure_leaves_pattern_in_synthesis(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        git = await _synthesized(eg, base_time)
        publisher = Publisher(eg.store, eg.patterns, eg.memories, _BrokenWriter(),
                              eg.config.publish, eg.config.dialectic)
        with pytest.raises(PublishError):
            await publisher.publish(git.id)
        assert eg.patterns.get(git.id).state is PatternState.SYNTHESIS
        assert eg.patterns.get(git.id).version == 0
        assert eg.store.list_rules() == []

    asyncio.run(_run())


def test_withdraw_removes_artifact(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        git = await _synthesized(eg, base_time)
        ref = await eg.publisher.publish(git.id)
        assert await eg.publisher.withdraw(git.id) is True
        assert not Path(ref.path).exists()
        assert [r.status for r in eg.store.list_rules()] == [RuleStatus.WITHDRAWN]
        assert await eg.publisher.withdraw(git.id) is False

    asyncio.run(_run())


def test_artifact_lists_examples_and_tools(engram_factory, base_time):
    async def _run() -> None:
        eg = engram_factory()
        git = await _synthesized(eg, base_time)
        artifact = eg.publisher.build_artifact(git, 1)
        assert artifact.title == "Run bun test before git commit"
        assert artifact.related_tools == ["Bash"]
        assert artifact.examples == ['{"command":"git commit -m wip"}']
        assert "Not when docs-only=true" in artifact.when_to_apply
        assert artifact.scope_globs == []
        assert artifact.session_count == 1

    asyncio.run(_run())
