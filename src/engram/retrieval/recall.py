"""Recall over memories and patterns.

Vector similarity first. When the embedding backend is down or nothing clears
the similarity threshold, fall back to FTS5 over memories and a token match
over pattern statements.
"""

from __future__ import annotations

import re

import numpy as np
import structlog

from engram.config import IndexConfig
from engram.embeddings.cache import CachedEmbedder
from engram.patterns.table import PatternTable
from engram.storage.faiss_store import SimilarityIndex, normalize
from engram.storage.sqlite_store import SQLiteStore
from engram.types import Memory, Pattern, RecallHit

logger = structlog.get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")


def _memory_hit(memory: Memory, score: float, source: str) -> RecallHit:
    return RecallHit(
        kind="memory",
        id=memory.id,
        score=score,
        timestamp=memory.reinforced_at or memory.created_at,
        text=memory.content,
        source=source,
        metadata={
            "session_id": memory.session_id,
            "tool_name": memory.tool_name,
            "tier": memory.tier.value if memory.tier else None,
            "keys": memory.key_dict(),
        },
    )


def _pattern_hit(pattern: Pattern, score: float, source: str) -> RecallHit:
    return RecallHit(
        kind="pattern",
        id=pattern.id,
        score=score,
        timestamp=pattern.updated_at,
        text=pattern.statement,
        source=source,
        metadata={
            "state": pattern.state.value,
            "confidence": round(pattern.confidence, 4),
            "evidence": pattern.evidence_count,
            "version": pattern.version,
        },
    )


def rank(hits: list[RecallHit], limit: int) -> list[RecallHit]:
    """Similarity, then recency."""
    hits.sort(key=lambda h: (-h.score, -h.timestamp.timestamp(), h.kind, h.id))
    return hits[:limit]


class Recall:
    def __init__(self, store: SQLiteStore, index: SimilarityIndex, patterns: PatternTable,
                 embedder: CachedEmbedder, config: IndexConfig | None = None) -> None:
        self.store = store
        self.index = index
        self.patterns = patterns
        self.embedder = embedder
        self.config = config or IndexConfig()

    async def find(self, query: str, limit: int = 10) -> list[RecallHit]:
        if not query.strip() or limit <= 0:
            return []
        try:
            vector = await self.embedder.embed_single(query)
        except Exception as exc:
            logger.warning("recall_keyword_fallback", reason="embedding_unavailable", error=str(exc))
            return self.keyword(query, limit)
        hits = self.vector(vector, limit)
        if not hits:
            return self.keyword(query, limit)
        return hits

    def vector(self, vector: np.ndarray, limit: int) -> list[RecallHit]:
        min_sim = self.config.min_similarity
        found = self.index.nearest(vector, k=limit, min_similarity=min_sim)
        memories = self.store.get_memories([mid for mid, _ in found])
        hits = [_memory_hit(memories[mid], score, "vector")
                for mid, score in found if mid in memories]

        query = normalize(vector)[0]
        for pattern in self.patterns.open():
            centroid = self.index.centroid(pattern.supporting_ids)
            if centroid is None:
                continue
            score = float(np.dot(query, centroid))
            if score >= min_sim:
                hits.append(_pattern_hit(pattern, score, "vector"))
        return rank(hits, limit)

    def keyword(self, query: str, limit: int) -> list[RecallHit]:
        hits: list[RecallHit] = []
        # FTS scores are not comparable to cosine, so rank-normalize them.
        for pos, (memory, _) in enumerate(self.store.search_memories_fts(query, limit=limit), 1):
            hits.append(_memory_hit(memory, 1.0 / pos, "keyword"))

        tokens = {t.lower() for t in _TOKEN_RE.findall(query)}
        if tokens:
            for pattern in self.patterns.open():
                words = {t.lower() for t in _TOKEN_RE.findall(pattern.statement)}
                share = len(tokens & words) / len(tokens)
                if share > 0:
                    hits.append(_pattern_hit(pattern, share, "keyword"))
        return rank(hits, limit)
