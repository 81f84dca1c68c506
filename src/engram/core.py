"""Engram: wires the store, index, pattern machinery and publisher together."""

from __future__ import annotations

import inspect
import shutil
from datetime import datetime
from typing import Any

import structlog

from engram.capture.encoder import encode, parse_event
from engram.config import Config
from engram.consolidation.cycle import ConsolidationCycle, CycleScheduler
from engram.dialectic.engine import DialecticEngine
from engram.dialectic.summarizer import Summarizer, create_summarizer
from engram.embeddings.backends import EmbeddingBackend, create_embedder
from engram.embeddings.cache import CachedEmbedder
from engram.lifecycle.manager import LifecycleManager
from engram.memory.indexer import EmbeddingIndexer
from engram.memory.store import MemoryStore
from engram.patterns.detector import PatternDetector
from engram.patterns.table import PatternTable
from engram.publish.publisher import Publisher
from engram.publish.writer import FileRuleWriter, RuleWriter
from engram.retrieval.recall import Recall
from engram.storage.faiss_store import SimilarityIndex
from engram.storage.sqlite_store import SQLiteStore
from engram.types import CycleReport, Memory, NoOp, PatternState, RecallHit, RuleRef, RuleStatus
from engram.utils import utcnow

logger = structlog.get_logger(__name__)


class Engram:
    """Central object used by the CLI and the HTTP API."""

    def __init__(
        self,
        config: Config | None = None,
        embedder: EmbeddingBackend | None = None,
        summarizer: Summarizer | None = None,
        writer: RuleWriter | None = None,
    ) -> None:
        self.config = config or Config.load()
        self.config.ensure_dirs()
        cfg = self.config

        # Storage
        self.store = SQLiteStore(cfg.db_path)
        backend = embedder or create_embedder(cfg.embedding)
        self.embedder = CachedEmbedder(backend, self.store, enabled=cfg.embedding.cache)
        self.index = SimilarityIndex(backend.dims, cfg.index_path)
        self.indexer = EmbeddingIndexer(self.store, self.index, self.embedder,
                                        maxsize=cfg.ingest.queue_maxsize)
        self.memories = MemoryStore(self.store, cfg.ingest, on_append=self.indexer.enqueue)

        # Patterns
        self.patterns = PatternTable(self.store)
        self.patterns.load()
        self.detector = PatternDetector(self.store, self.index, self.patterns, cfg.detector)
        self.summarizer = summarizer or create_summarizer(cfg.summarizer)
        self.dialectic = DialecticEngine(
            self.store, self.patterns, self.memories, self.summarizer, cfg.dialectic,
            sequence_window_seconds=cfg.detector.sequence_window_seconds,
        )
        self.lifecycle = LifecycleManager(
            self.store, self.memories, self.patterns, cfg.lifecycle, cfg.dialectic, index=self.index,
        )

        # Publishing
        self.writer = writer or FileRuleWriter(cfg.publish.rules_dir)
        self.publisher = Publisher(
            self.store, self.patterns, self.memories, self.writer, cfg.publish, cfg.dialectic,
        )

        self.cycle = ConsolidationCycle(
            self.store, self.indexer, self.detector, self.dialectic, self.lifecycle,
            self.publisher, self.patterns, cfg.consolidation, cfg.dialectic, cfg.publish,
        )
        self.scheduler = CycleScheduler(self.cycle)
        self.recall = Recall(self.store, self.index, self.patterns, self.embedder, cfg.index)

        if self.index.size != self.store.count_vectors():
            logger.info("index_out_of_sync", index=self.index.size, store=self.store.count_vectors())
            self.index.rebuild(self.store)

    # --- Capture ---

    def capture(self, payload: dict[str, Any] | str | bytes) -> Memory:
        """Validate, encode and append one tool event. Embedding happens on drain."""
        event = parse_event(payload)
        memory = encode(event, self.config.ingest.max_input_chars, self.config.ingest.max_output_chars)
        memory.id = self.memories.append(memory)
        return memory

    def start_session(self, session_id: str, at: datetime | None = None) -> None:
        self.memories.start_session(session_id, at or utcnow())
        logger.info("session_started", session_id=session_id)

    def end_session(self, session_id: str, at: datetime | None = None) -> bool:
        ended = self.memories.end_session(session_id, at or utcnow())
        logger.info("session_ended", session_id=session_id, known=ended)
        return ended

    async def drain(self) -> int:
        done = await self.indexer.drain()
        if done:
            self.index.save()
        return done

    # --- Recall ---

    async def find(self, query: str, limit: int = 10) -> list[RecallHit]:
        return await self.recall.find(query, limit=limit)

    # --- Consolidation ---

    async def consolidate(self, now: datetime | None = None) -> CycleReport | None:
        report = await self.scheduler.trigger(now)
        if report is not None and not report.skipped:
            self.index.save()
        return report

    async def publish(self, pattern_id: int | None = None, force: bool = False) -> list[RuleRef | NoOp]:
        if pattern_id is not None:
            return [await self.publisher.publish(pattern_id, force=force)]
        ready = self.patterns.all({PatternState.SYNTHESIS, PatternState.PUBLISHED})
        return [await self.publisher.publish(p.id, force=force) for p in ready]

    # --- Maintenance ---

    def rebuild_index(self) -> int:
        size = self.index.rebuild(self.store)
        self.index.save()
        return size

    def status(self) -> dict[str, Any]:
        return {
            "memories": self.store.count_memories(),
            "tiers": self.store.count_memories_by_tier(),
            "vectors": self.store.count_vectors(),
            "index_size": self.index.size,
            "sessions": self.store.count_sessions(),
            "patterns": self.patterns.counts(),
            "rules": len(self.store.list_rules(status=RuleStatus.ACTIVE)),
            "embedding": {
                "model": self.embedder.model,
                "pending": self.indexer.pending,
                "dropped": self.indexer.dropped,
                "failed": self.indexer.failed,
                "cache_hits": self.embedder.hits,
                "cache_misses": self.embedder.misses,
            },
            "last_cycle": (
                self.scheduler.last_report.finished_at.isoformat()
                if self.scheduler.last_report and self.scheduler.last_report.finished_at
                else None
            ),
        }

    async def close(self) -> None:
        close_fn = getattr(self.summarizer, "close", None)
        if close_fn is not None:
            maybe = close_fn()
            if inspect.isawaitable(maybe):
                await maybe
        await self.embedder.close()
        self.index.save()
        self.store.close()

    @staticmethod
    def reset(config: Config) -> None:
        """Delete the database and index. Published rule files are left alone."""
        for path in (config.db_path.parent, config.index_dir):
            if path.exists():
                shutil.rmtree(path)
        logger.warning("data_reset", data_dir=str(config.data_dir))
