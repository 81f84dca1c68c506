"""Consolidation cycle: detector, dialectic, lifecycle and publisher as one batch job.

Only one cycle runs at a time per store. Inside the process an asyncio lock
serializes runs; across processes a lease row in SQLite does. Pattern
evaluations run concurrently but each commits on its own, so a cancelled cycle
leaves every pattern either fully updated or untouched.
"""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from datetime import datetime, timedelta

import structlog

from engram.config import ConsolidationConfig, DialecticConfig, PublishConfig
from engram.dialectic.engine import DialecticEngine, Evaluation
from engram.exceptions import EngramError, PublishConflict, PublishError
from engram.lifecycle.manager import LifecycleManager
from engram.memory.indexer import EmbeddingIndexer
from engram.patterns.detector import PatternDetector
from engram.patterns.table import PatternTable
from engram.publish.publisher import Publisher
from engram.storage.sqlite_store import SQLiteStore
from engram.types import CycleReport, NoOp, PatternState
from engram.utils import utcnow

logger = structlog.get_logger(__name__)

LEASE_NAME = "consolidation"


class ConsolidationCycle:
    def __init__(
        self,
        store: SQLiteStore,
        indexer: EmbeddingIndexer,
        detector: PatternDetector,
        dialectic: DialecticEngine,
        lifecycle: LifecycleManager,
        publisher: Publisher,
        patterns: PatternTable,
        config: ConsolidationConfig | None = None,
        dialectic_config: DialecticConfig | None = None,
        publish_config: PublishConfig | None = None,
    ) -> None:
        self.store = store
        self.indexer = indexer
        self.detector = detector
        self.dialectic = dialectic
        self.lifecycle = lifecycle
        self.publisher = publisher
        self.patterns = patterns
        self.config = config or ConsolidationConfig()
        self.dialectic_config = dialectic_config or DialecticConfig()
        self.publish_config = publish_config or PublishConfig()
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._lock = asyncio.Lock()

    async def run(self, now: datetime | None = None,
                  cancel: asyncio.Event | None = None) -> CycleReport:
        async with self._lock:
            now = now or utcnow()
            report = CycleReport(started_at=now)
            expires = utcnow() + timedelta(seconds=self.config.lease_ttl_seconds)
            if not self.store.acquire_lease(LEASE_NAME, self.owner, expires, utcnow()):
                report.skipped = "lease_held"
                report.finished_at = utcnow()
                logger.info("cycle_skipped", reason=report.skipped)
                return report
            try:
                await self._run(now, cancel or asyncio.Event(), report)
            finally:
                self.store.release_lease(LEASE_NAME, self.owner)
                report.finished_at = utcnow()
            logger.info(
                "cycle_finished",
                attached=report.attached, seeded=len(report.seeded),
                contradictions=report.contradictions, transitions=len(report.transitions),
                retired=len(report.retired), published=len(report.published),
                cancelled=report.cancelled, errors=len(report.errors),
            )
            return report

    async def _run(self, now: datetime, cancel: asyncio.Event, report: CycleReport) -> None:
        await self.indexer.drain()
        report.backfilled = await self.indexer.backfill()

        batch = self.detector.pending(now)
        plan = self.detector.plan(batch)
        report.attached = plan.attached

        evaluated = set(plan.assignments)
        await self._evaluate_all(list(plan.assignments.items()), now, cancel, report)
        if cancel.is_set():
            report.cancelled = True
            return

        for group in plan.groups:
            if cancel.is_set():
                report.cancelled = True
                return
            try:
                ev = await self.dialectic.seed(group, now)
            except EngramError as exc:
                report.errors.append(f"seed {group}: {exc}")
                logger.error("seed_failed", memory_ids=group, error=str(exc))
                continue
            if ev is not None:
                report.seeded.append(ev.pattern_id)
                evaluated.add(ev.pattern_id)
                self._record(ev, report)
        self.detector.advance_watermark(batch)

        # Antithesis patterns retry the merge even without new evidence.
        retry = [(p.id, []) for p in self.patterns.all({PatternState.ANTITHESIS})
                 if p.id not in evaluated]
        await self._evaluate_all(retry, now, cancel, report)
        if cancel.is_set():
            report.cancelled = True
            return

        life = self.lifecycle.run(now)
        report.promoted_short_term = life.promoted_short_term
        report.promoted_long_term = life.promoted_long_term
        report.expired = life.expired
        report.retired = life.retired
        report.transitions.extend(life.transitions)
        for pattern_id in life.retired:
            try:
                await self.publisher.withdraw(pattern_id)
            except PublishError as exc:
                report.errors.append(f"withdraw {pattern_id}: {exc}")
                logger.warning("withdraw_failed", pattern_id=pattern_id, error=str(exc))

        if self.publish_config.auto_publish:
            await self._publish_ready(cancel, report)

    async def _evaluate_all(self, work: list[tuple[int, list[int]]], now: datetime,
                            cancel: asyncio.Event, report: CycleReport) -> None:
        if not work:
            return
        sem = asyncio.Semaphore(self.dialectic_config.max_parallel)

        async def _one(pattern_id: int, memory_ids: list[int]) -> Evaluation | None:
            async with sem:
                if cancel.is_set():
                    return None
                return await self.dialectic.evaluate(pattern_id, memory_ids, now)

        results = await asyncio.gather(
            *(_one(pid, mids) for pid, mids in work), return_exceptions=True
        )
        for (pattern_id, _), result in zip(work, results):
            if isinstance(result, BaseException):
                report.errors.append(f"evaluate {pattern_id}: {result}")
                logger.error("evaluation_failed", pattern_id=pattern_id, error=str(result))
            elif result is not None:
                self._record(result, report)

    @staticmethod
    def _record(ev: Evaluation, report: CycleReport) -> None:
        report.contradictions += len(ev.contradicted)
        report.transitions.extend((ev.pattern_id, src.value, dst.value) for src, dst, _ in ev.transitions)

    async def _publish_ready(self, cancel: asyncio.Event, report: CycleReport) -> None:
        ready = self.patterns.all({PatternState.SYNTHESIS, PatternState.PUBLISHED})
        for pattern in ready:
            if cancel.is_set():
                report.cancelled = True
                return
            try:
                result = await self.publisher.publish(pattern.id)
            except PublishConflict as exc:
                report.errors.append(f"publish {pattern.id}: {exc}")
                logger.warning("publish_conflict", pattern_id=pattern.id, path=exc.path)
                continue
            except PublishError as exc:
                report.errors.append(f"publish {pattern.id}: {exc}")
                logger.error("publish_failed", pattern_id=pattern.id, error=str(exc))
                continue
            if isinstance(result, NoOp):
                report.noops.append(result)
            else:
                report.published.append(result)
                if pattern.state is PatternState.SYNTHESIS:
                    report.transitions.append(
                        (pattern.id, PatternState.SYNTHESIS.value, PatternState.PUBLISHED.value)
                    )


class CycleScheduler:
    """Coalesces triggers: a trigger during a running cycle schedules exactly one follow-up."""

    def __init__(self, cycle: ConsolidationCycle) -> None:
        self.cycle = cycle
        self._busy = False
        self._pending = False
        self._cancel: asyncio.Event | None = None
        self.runs = 0
        self.coalesced = 0
        self.last_report: CycleReport | None = None

    @property
    def running(self) -> bool:
        return self._busy

    async def trigger(self, now: datetime | None = None) -> CycleReport | None:
        """Run a cycle now. Returns None when folded into the cycle already running."""
        if self._busy:
            self._pending = True
            self.coalesced += 1
            logger.debug("cycle_coalesced", coalesced=self.coalesced)
            return None
        self._busy = True
        try:
            while True:
                self._pending = False
                self._cancel = asyncio.Event()
                report = await self.cycle.run(now, cancel=self._cancel)
                self.runs += 1
                self.last_report = report
                if not self._pending or report.cancelled:
                    break
                now = None
        finally:
            self._busy = False
            self._cancel = None
        return report

    def cancel(self) -> bool:
        if self._cancel is None:
            return False
        self._cancel.set()
        return True

    async def run_periodic(self, interval_seconds: float, stop: asyncio.Event) -> None:
        logger.info("consolidation_scheduler_started", interval=interval_seconds)
        while not stop.is_set():
            try:
                await self.trigger()
            except EngramError as exc:
                logger.error("cycle_failed", error=str(exc))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("consolidation_scheduler_stopped")
