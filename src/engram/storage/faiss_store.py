"""FAISS similarity index over memory embeddings.

The index is derived data. Vectors live in the ``memory_vectors`` table and
:meth:`SimilarityIndex.rebuild` replays them after a crash or model change.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import faiss
import numpy as np
import structlog

from engram.exceptions import StorageError

if TYPE_CHECKING:
    from engram.storage.sqlite_store import SQLiteStore

logger = structlog.get_logger(__name__)


def to_blob(vector: np.ndarray) -> bytes:
    return np.ascontiguousarray(vector, dtype=np.float32).tobytes()


def from_blob(blob: bytes, dims: int) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32, count=dims).copy()


def normalize(vector: np.ndarray) -> np.ndarray:
    vec = np.ascontiguousarray(np.asarray(vector, dtype=np.float32).reshape(1, -1))
    faiss.normalize_L2(vec)
    return vec


class SimilarityIndex:
    """Cosine nearest-neighbour lookup keyed by memory id."""

    def __init__(self, dims: int, index_path: Path | str | None = None) -> None:
        self.dims = dims
        self.index_path = Path(index_path) if index_path else None
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(dims))
        self._ids: set[int] = set()
        if self.index_path and self.index_path.exists():
            self._load()

    @property
    def size(self) -> int:
        return int(self._index.ntotal)

    def __contains__(self, memory_id: int) -> bool:
        return memory_id in self._ids

    def upsert(self, memory_id: int, vector: np.ndarray) -> None:
        vec = normalize(vector)
        if vec.shape[1] != self.dims:
            raise StorageError(
                "vector dimension mismatch", {"expected": self.dims, "got": int(vec.shape[1])}
            )
        ids = np.array([memory_id], dtype=np.int64)
        if memory_id in self._ids:
            self._index.remove_ids(ids)
        self._index.add_with_ids(vec, ids)
        self._ids.add(memory_id)

    def remove(self, memory_id: int) -> bool:
        if memory_id not in self._ids:
            return False
        self._index.remove_ids(np.array([memory_id], dtype=np.int64))
        self._ids.discard(memory_id)
        return True

    def nearest(self, vector: np.ndarray, k: int = 10,
                min_similarity: float = 0.82) -> list[tuple[int, float]]:
        """Ids ordered by cosine similarity, dropping anything below the threshold."""
        if self.size == 0 or k <= 0:
            return []
        vec = normalize(vector)
        scores, ids = self._index.search(vec, min(k, self.size))
        out = []
        for score, mid in zip(scores[0], ids[0]):
            if mid < 0 or float(score) < min_similarity:
                continue
            out.append((int(mid), float(score)))
        return out

    def vector(self, memory_id: int) -> np.ndarray | None:
        if memory_id not in self._ids:
            return None
        return self._index.reconstruct(int(memory_id)).astype(np.float32)

    def centroid(self, memory_ids: list[int]) -> np.ndarray | None:
        vecs = [v for v in (self.vector(m) for m in memory_ids) if v is not None]
        if not vecs:
            return None
        mean = np.mean(np.stack(vecs), axis=0)
        norm = float(np.linalg.norm(mean))
        if norm == 0.0:
            return None
        return (mean / norm).astype(np.float32)

    def reset(self) -> None:
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dims))
        self._ids = set()

    def rebuild(self, store: SQLiteStore) -> int:
        """Replay every persisted vector from the store into a fresh index."""
        self.reset()
        batch_ids: list[int] = []
        batch_vecs: list[np.ndarray] = []
        skipped = 0
        for memory_id, blob, dims in store.iter_vectors():
            if dims != self.dims:
                skipped += 1
                continue
            batch_ids.append(memory_id)
            batch_vecs.append(from_blob(blob, dims))
        if batch_ids:
            vecs = np.ascontiguousarray(np.stack(batch_vecs).astype(np.float32))
            faiss.normalize_L2(vecs)
            self._index.add_with_ids(vecs, np.array(batch_ids, dtype=np.int64))
            self._ids = set(batch_ids)
        if skipped:
            logger.warning("index_rebuild_dims_skipped", skipped=skipped, dims=self.dims)
        logger.info("index_rebuilt", vectors=self.size)
        return self.size

    def save(self) -> None:
        if not self.index_path:
            raise StorageError("No index_path configured")
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self._index, str(self.index_path))

    def _load(self) -> None:
        try:
            index = faiss.read_index(str(self.index_path))
        except RuntimeError as exc:
            logger.warning("index_load_failed", path=str(self.index_path), error=str(exc))
            return
        if index.d != self.dims:
            logger.warning("index_dims_changed", stored=index.d, dims=self.dims)
            return
        self._index = index
        self._ids = {int(i) for i in faiss.vector_to_array(index.id_map)}
