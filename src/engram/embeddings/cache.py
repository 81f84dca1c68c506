"""Embedding cache keyed by text hash, persisted in SQLite."""

from __future__ import annotations

import numpy as np

from engram.embeddings.backends import EmbeddingBackend
from engram.storage.faiss_store import from_blob, to_blob
from engram.storage.sqlite_store import SQLiteStore
from engram.utils import content_hash


class CachedEmbedder:
    """Wraps a backend so repeated texts never hit it twice."""

    def __init__(self, backend: EmbeddingBackend, store: SQLiteStore, enabled: bool = True) -> None:
        self.backend = backend
        self.store = store
        self.enabled = enabled
        self.dims = backend.dims
        self.model = f"{type(backend).__name__}:{getattr(backend, 'model', '')}:{backend.dims}"
        self.hits = 0
        self.misses = 0

    async def embed_single(self, text: str) -> np.ndarray:
        if not self.enabled:
            return await self.backend.embed_single(text)
        key = content_hash(text)
        blob = self.store.get_cached_embedding(key, self.model)
        if blob is not None:
            self.hits += 1
            return from_blob(blob, self.dims)
        self.misses += 1
        vec = np.asarray(await self.backend.embed_single(text), dtype=np.float32)
        self.store.cache_embedding(key, to_blob(vec), self.model)
        return vec

    async def close(self) -> None:
        await self.backend.close()
