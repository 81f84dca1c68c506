from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from conftest import DIMS, CommandEmbedder
from engram.capture.encoder import encode, parse_event
from engram.embeddings.cache import CachedEmbedder
from engram.exceptions import DuplicateKind, InvalidTransition, StorageError
from engram.memory.indexer import EmbeddingIndexer
from engram.memory.store import MemoryStore
from engram.storage.faiss_store import SimilarityIndex
from engram.storage.sqlite_store import SQLiteStore
from engram.types import Tier

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _memory(session: str, command: str, at: datetime, keys: dict | None = None):
    return encode(parse_event({
        "session_id": session, "tool_name": "Bash",
        "input": {"command": command}, "timestamp": at.isoformat(), "keys": keys or {},
    }))


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(tmp_path / "engram.db")
    yield s
    s.close()


def test_duplicate_inside_debounce_window_is_rejected(store):
    memories = MemoryStore(store)
    first = memories.append(_memory("s1", "ls", T0))
    with pytest.raises(DuplicateKind) as exc:
        memories.append(_memory("s1", "ls", T0 + timedelta(seconds=3)))
    assert exc.value.existing_id == first
    # Outside the window, or in another session, it is a new memory.
    memories.append(_memory("s1", "ls", T0 + timedelta(seconds=30)))
    memories.append(_memory("s2", "ls", T0 + timedelta(seconds=1)))
    assert store.count_memories() == 3


def test_recurrence_reinforces_earlier_memory(store):
    memories = MemoryStore(store)
    first = memories.append(_memory("s1", "make build", T0))
    memories.touch(first, Tier.SHORT_TERM)
    later = T0 + timedelta(hours=2)
    memories.append(_memory("s2", "make build", later))

    again = memories.get(first)
    assert again.tier is Tier.WORKING
    assert again.reinforced_at == later
    # Content is never rewritten.
    assert again.content.startswith("Tool: Bash")


def test_touch_only_moves_one_tier_forward(store):
    memories = MemoryStore(store)
    mid = memories.append(_memory("s1", "ls", T0))
    with pytest.raises(InvalidTransition):
        memories.touch(mid, Tier.LONG_TERM)
    assert memories.touch(mid, Tier.SHORT_TERM).tier is Tier.SHORT_TERM
    assert memories.touch(mid, Tier.LONG_TERM).tier is Tier.LONG_TERM
    with pytest.raises(InvalidTransition):
        memories.touch(mid, Tier.WORKING, T0 - timedelta(minutes=1))
    assert memories.touch(mid, Tier.WORKING, T0 + timedelta(minutes=1)).tier is Tier.WORKING


def test_expired_memory_cannot_be_touched(store):
    memories = MemoryStore(store)
    mid = memories.append(_memory("s1", "ls", T0))
    memories.expire(mid)
    assert memories.get(mid).tier is None
    with pytest.raises(InvalidTransition):
        memories.touch(mid, Tier.SHORT_TERM)
    assert memories.reinforce(mid, T0 + timedelta(hours=1)) is False
    with pytest.raises(InvalidTransition):
        memories.touch(9999, Tier.SHORT_TERM)


def test_query_by_keys_returns_newest_first(store):
    memories = MemoryStore(store)
    ids = [
        memories.append(_memory("s1", f"git commit -m {i}", T0 + timedelta(minutes=i)))
        for i in range(3)
    ]
    memories.append(_memory("s1", "git push", T0 + timedelta(minutes=5)))
    found = memories.query_by_keys({"command": "git", "subcommand": "commit"})
    assert [m.id for m in found] == list(reversed(ids))
    assert memories.query_by_keys({"command": "git", "subcommand": "commit"}, limit=1)[0].id == ids[-1]


def test_append_notifies_listener(store):
    seen: list[int] = []
    memories = MemoryStore(store, on_append=seen.append)
    mid = memories.append(_memory("s1", "ls", T0))
    assert seen == [mid]
    assert store.count_sessions() == 1


def _unit(seed: int) -> np.ndarray:
    vec = np.random.default_rng(seed).standard_normal(DIMS).astype(np.float32)
    return vec / np.linalg.norm(vec)


def test_index_threshold_centroid_and_rebuild(store, tmp_path):
    memories = MemoryStore(store)
    index = SimilarityIndex(DIMS, tmp_path / "idx" / "memory.index")
    a, b = _unit(1), _unit(2)
    ids = []
    for i, vec in enumerate([a, a, b]):
        mid = memories.append(_memory("s1", f"cmd{i}", T0 + timedelta(minutes=i)))
        index.upsert(mid, vec)
        store.put_vector(mid, vec.tobytes(), DIMS, "test")
        ids.append(mid)

    hits = index.nearest(a, k=10, min_similarity=0.82)
    assert sorted(mid for mid, _ in hits) == ids[:2]
    assert all(score == pytest.approx(1.0, abs=1e-5) for _, score in hits)

    centroid = index.centroid(ids[:2])
    assert float(np.dot(centroid, a)) == pytest.approx(1.0, abs=1e-5)
    assert index.centroid([12345]) is None

    with pytest.raises(StorageError):
        index.upsert(99, np.ones(DIMS // 2, dtype=np.float32))

    index.save()
    reloaded = SimilarityIndex(DIMS, tmp_path / "idx" / "memory.index")
    assert reloaded.size == 3 and ids[0] in reloaded

    index.reset()
    assert index.size == 0
    memories.expire(ids[2])
    assert index.rebuild(store) == 2
    assert ids[2] not in index


def test_indexer_drops_on_full_queue_and_survives_backend_failure(store, tmp_path):
    async def _run() -> None:
        backend = CommandEmbedder()
        indexer = EmbeddingIndexer(store, SimilarityIndex(DIMS), CachedEmbedder(backend, store),
                                   maxsize=1)
        memories = MemoryStore(store, on_append=indexer.enqueue)
        first = memories.append(_memory("s1", "ls", T0))
        second = memories.append(_memory("s1", "pwd", T0 + timedelta(minutes=1)))
        assert indexer.dropped == 1
        assert indexer.pending == 1

        assert await indexer.drain() == 1
        assert first in indexer.index and second not in indexer.index

        backend.fail = True
        assert await indexer.backfill() == 0
        assert indexer.failed == 1
        # The memory is kept without a vector.
        assert store.get_memory(second).has_vector is False

        backend.fail = False
        assert await indexer.backfill() == 1
        assert store.get_memory(second).has_vector is True
        assert store.count_vectors() == 2

    asyncio.run(_run())


def test_embedding_cache_skips_backend_for_repeated_text(store):
    async def _run() -> None:
        backend = CommandEmbedder()
        cached = CachedEmbedder(backend, store)
        first = await cached.embed_single("Bash command=git")
        second = await cached.embed_single("Bash command=git")
        assert backend.calls == 1
        assert cached.hits == 1 and cached.misses == 1
        np.testing.assert_allclose(first, second)

    asyncio.run(_run())
