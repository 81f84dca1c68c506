"""Publisher: turns synthesized patterns into versioned rule artifacts."""

from __future__ import annotations

import asyncio
from datetime import datetime

import structlog

from engram.config import DialecticConfig, PublishConfig
from engram.dialectic.states import check_transition
from engram.dialectic.summarizer import rule_title
from engram.exceptions import PublishConflict, PublishError
from engram.memory.store import MemoryStore
from engram.patterns.table import PatternTable
from engram.publish.formatter import render, rule_filename, rule_hash, scope_globs
from engram.publish.writer import RuleWriter
from engram.storage.sqlite_store import SQLiteStore
from engram.types import (
    AuditEvent,
    Memory,
    NoOp,
    Pattern,
    PatternState,
    RuleArtifact,
    RuleRecord,
    RuleRef,
    RuleStatus,
)
from engram.utils import utcnow

logger = structlog.get_logger(__name__)

_PUBLISHABLE = (PatternState.SYNTHESIS, PatternState.PUBLISHED)


class Publisher:
    def __init__(
        self,
        store: SQLiteStore,
        patterns: PatternTable,
        memories: MemoryStore,
        writer: RuleWriter,
        config: PublishConfig | None = None,
        dialectic: DialecticConfig | None = None,
    ) -> None:
        self.store = store
        self.patterns = patterns
        self.memories = memories
        self.writer = writer
        self.config = config or PublishConfig()
        self.dialectic = dialectic or DialecticConfig()
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock(self, pattern_id: int) -> asyncio.Lock:
        lock = self._locks.get(pattern_id)
        if lock is None:
            lock = self._locks[pattern_id] = asyncio.Lock()
        return lock

    def build_artifact(self, pattern: Pattern, version: int,
                       published_at: datetime | None = None) -> RuleArtifact:
        found = self.memories.get_many(pattern.supporting_ids)
        evidence = [found[mid] for mid in pattern.evidence_ids if mid in found]
        paths = [m.key_dict().get("file_path", "") for m in found.values()]
        globs = scope_globs(paths)
        claim = pattern.claim
        when = [f"{k} is `{v}`" for k, v in sorted(claim.context.items()) if k != "tool"]
        when += [f"Not when {c.render()}" for c in claim.exceptions]
        return RuleArtifact(
            pattern_id=pattern.id,
            version=version,
            confidence=pattern.confidence,
            statement=pattern.statement,
            title=rule_title(claim),
            scope_globs=globs,
            when_to_apply=when,
            examples=self._examples(evidence),
            related_tools=sorted({m.tool_name for m in found.values()}),
            session_count=len({m.session_id for m in found.values()}),
            content_hash=rule_hash(pattern.statement, globs),
            published_at=published_at or utcnow(),
        )

    def _examples(self, evidence: list[Memory]) -> list[str]:
        out: list[str] = []
        for memory in sorted(evidence, key=lambda m: m.created_at, reverse=True):
            lines = memory.content.splitlines()
            line = lines[1] if len(lines) > 1 else lines[0] if lines else ""
            text = line.removeprefix("Input: ").strip()
            if text and text not in out:
                out.append(text)
            if len(out) >= self.config.max_examples:
                break
        return out

    async def publish(self, pattern_id: int, force: bool = False) -> RuleRef | NoOp:
        async with self._lock(pattern_id):
            return await self._publish(pattern_id, force)

    async def _publish(self, pattern_id: int, force: bool) -> RuleRef | NoOp:
        pattern = self.patterns.get(pattern_id)
        if pattern is None:
            return NoOp(pattern_id=pattern_id, reason="not_found")
        if pattern.state not in _PUBLISHABLE:
            return NoOp(pattern_id=pattern_id, reason="not_synthesized")
        if (pattern.evidence_count < self.dialectic.min_evidence
                or pattern.confidence < self.config.min_confidence):
            logger.info("publish_skipped", pattern_id=pattern_id, evidence=pattern.evidence_count,
                        confidence=round(pattern.confidence, 4))
            return NoOp(pattern_id=pattern_id, reason="insufficient_evidence")

        now = utcnow()
        version = pattern.version + 1
        artifact = self.build_artifact(pattern, version, now)
        active = self.store.active_rule(pattern_id)

        if active is not None and active.content_hash == artifact.content_hash:
            if pattern.state is PatternState.SYNTHESIS:
                # Reopened by a contradiction that did not change the statement.
                self._mark_published(pattern, "statement unchanged")
            return NoOp(pattern_id=pattern_id, reason="unchanged")

        if active is not None and active.file_path:
            on_disk = await asyncio.to_thread(self.writer.current_hash, active.file_path)
            if on_disk is not None and on_disk != active.file_hash and not force:
                raise PublishConflict(pattern_id, active.file_path)

        content = render(artifact)
        filename = rule_filename(artifact.title, pattern_id)
        previous = active.file_path if active is not None else None
        try:
            path, file_hash = await asyncio.to_thread(self.writer.write, filename, content, previous)
        except OSError as exc:
            raise PublishError(
                "rule write failed", {"pattern_id": pattern_id, "error": str(exc)}
            ) from exc

        with self.store.transaction():
            self.store.insert_rule(RuleRecord(
                pattern_id=pattern_id,
                version=version,
                confidence=artifact.confidence,
                statement=artifact.statement,
                scope_globs=artifact.scope_globs,
                content_hash=artifact.content_hash,
                file_path=path,
                file_hash=file_hash,
                published_at=now,
            ))
            self.store.supersede_rules(pattern_id, below_version=version)
            pattern.version = version
            self.store.insert_audit_event(AuditEvent(
                action="publish", target_type="rule", target_id=str(pattern_id),
                detail=f"v{version} {path}",
            ))
            self._mark_published(pattern, f"rule v{version}")

        logger.info("rule_published", pattern_id=pattern_id, version=version, path=path,
                    confidence=round(artifact.confidence, 4))
        return RuleRef(
            pattern_id=pattern_id,
            version=version,
            path=path,
            content_hash=artifact.content_hash,
            published_at=now,
        )

    def _mark_published(self, pattern: Pattern, reason: str) -> None:
        transitions = []
        if pattern.state is not PatternState.PUBLISHED:
            check_transition(pattern, PatternState.PUBLISHED, self.dialectic.min_evidence,
                             self.config.min_confidence)
            transitions.append((pattern.state, PatternState.PUBLISHED, reason))
            pattern.state = PatternState.PUBLISHED
        self.patterns.commit(pattern, transitions=transitions)

    async def withdraw(self, pattern_id: int) -> bool:
        """Remove the artifact of a pattern that no longer holds."""
        async with self._lock(pattern_id):
            active = self.store.active_rule(pattern_id)
            if active is None:
                return False
            if active.file_path:
                try:
                    await asyncio.to_thread(self.writer.remove, active.file_path)
                except OSError as exc:
                    raise PublishError(
                        "rule removal failed", {"pattern_id": pattern_id, "error": str(exc)}
                    ) from exc
            with self.store.transaction():
                self.store.set_rule_status(active.id, RuleStatus.WITHDRAWN)
                self.store.insert_audit_event(AuditEvent(
                    action="withdraw", target_type="rule", target_id=str(pattern_id),
                    detail=f"v{active.version} {active.file_path}",
                ))
            logger.info("rule_withdrawn", pattern_id=pattern_id, version=active.version)
            return True
