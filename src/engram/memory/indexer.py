"""Fire-and-forget embedding of newly appended memories."""

from __future__ import annotations

import asyncio

import numpy as np
import structlog

from engram.embeddings.cache import CachedEmbedder
from engram.exceptions import EmbeddingUnavailable, StorageError
from engram.storage.faiss_store import SimilarityIndex, to_blob
from engram.storage.sqlite_store import SQLiteStore

logger = structlog.get_logger(__name__)


class EmbeddingIndexer:
    """Bounded queue between ingestion and the similarity index.

    ``enqueue`` never blocks. When the queue is full the memory is left without
    a vector; :meth:`backfill` picks it up on the next consolidation cycle.
    """

    def __init__(self, store: SQLiteStore, index: SimilarityIndex, embedder: CachedEmbedder,
                 maxsize: int = 1024) -> None:
        self.store = store
        self.index = index
        self.embedder = embedder
        self._queue: asyncio.Queue[int] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, memory_id: int) -> bool:
        try:
            self._queue.put_nowait(memory_id)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("embedding_queue_full", memory_id=memory_id, maxsize=self._queue.maxsize)
            return False
        return True

    async def drain(self) -> int:
        """Embed everything currently queued. Returns the number indexed."""
        done = 0
        while True:
            try:
                memory_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                if await self.index_memory(memory_id):
                    done += 1
            finally:
                self._queue.task_done()
        return done

    async def backfill(self, limit: int = 500) -> int:
        done = 0
        for memory_id in self.store.ids_without_vector(limit=limit):
            if await self.index_memory(memory_id):
                done += 1
        if done:
            logger.info("embeddings_backfilled", count=done)
        return done

    async def index_memory(self, memory_id: int) -> bool:
        memory = self.store.get_memory(memory_id)
        if memory is None or memory.tier is None:
            return False
        if memory.has_vector:
            if memory_id not in self.index:
                stored = self.store.get_vector(memory_id)
                if stored is not None:
                    self.index.upsert(memory_id, np.frombuffer(stored[0], dtype=np.float32))
            return False
        try:
            vector = await self.embedder.embed_single(memory.embedding_text())
        except Exception as exc:
            self.failed += 1
            err = EmbeddingUnavailable("embedding failed", {"memory_id": memory_id, "error": str(exc)})
            logger.warning("embedding_unavailable", memory_id=memory_id, error=str(err))
            return False
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        try:
            self.index.upsert(memory_id, vector)
        except StorageError as exc:
            logger.error("index_upsert_failed", memory_id=memory_id, error=str(exc))
            return False
        self.store.put_vector(memory_id, to_blob(vector), int(vector.shape[0]), self.embedder.model)
        return True
