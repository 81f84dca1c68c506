"""Pattern Detector: assigns settled memories to patterns or seeds new candidates."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import numpy as np
import structlog

from engram.capture.encoder import context_of
from engram.config import DetectorConfig
from engram.storage.faiss_store import SimilarityIndex
from engram.storage.sqlite_store import SQLiteStore
from engram.patterns.table import PatternTable
from engram.types import Memory, Pattern
from engram.utils import jaccard

logger = structlog.get_logger(__name__)

WATERMARK_KEY = "detector_watermark"


class _UnionFind:
    def __init__(self, size: int) -> None:
        self.parent = list(range(size))

    def find(self, x: int) -> int:
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)


@dataclass
class DetectionPlan:
    """Outcome of one single-writer assignment pass."""
    assignments: dict[int, list[int]] = field(default_factory=dict)
    groups: list[list[int]] = field(default_factory=list)
    unassigned: list[int] = field(default_factory=list)
    scores: dict[int, float] = field(default_factory=dict)

    @property
    def attached(self) -> int:
        return sum(len(v) for v in self.assignments.values())


class PatternDetector:
    def __init__(self, store: SQLiteStore, index: SimilarityIndex, patterns: PatternTable,
                 config: DetectorConfig | None = None) -> None:
        self.store = store
        self.index = index
        self.patterns = patterns
        self.config = config or DetectorConfig()

    def pending(self, now: datetime) -> list[Memory]:
        """Unassigned memories old enough that their successor is already known.

        Memories past the detection watermark come first, oldest first and
        capped at ``batch_limit``. Up to ``leftover_limit`` of the newest
        unassigned memories at or below the watermark join them so late
        recurrences can still cluster with earlier one-offs.
        """
        cfg = self.config
        since = now - timedelta(hours=cfg.lookback_hours)
        settled = now - timedelta(seconds=cfg.sequence_window_seconds)
        mark = self.store.get_watermark(WATERMARK_KEY)
        fresh = self.store.unassigned_memories(since, settled, limit=cfg.batch_limit, after=mark)
        if mark is None or cfg.leftover_limit == 0:
            return fresh
        leftovers = self.store.unassigned_memories(
            since, settled, limit=cfg.leftover_limit, through=mark, newest_first=True
        )
        return leftovers[::-1] + fresh

    def advance_watermark(self, batch: list[Memory]) -> None:
        if not batch:
            return
        newest = max((m.created_at, m.id) for m in batch)
        mark = self.store.get_watermark(WATERMARK_KEY)
        if mark is None or newest > mark:
            self.store.set_watermark(WATERMARK_KEY, newest)

    def temporal_proximity(self, a: datetime, b: datetime) -> float:
        minutes = abs((a - b).total_seconds()) / 60.0
        return math.exp(-minutes / self.config.temporal_scale_minutes)

    def score(self, memory: Memory, pattern: Pattern, centroid: np.ndarray | None,
              last_evidence_at: datetime | None = None) -> float:
        cfg = self.config
        vec = self.index.vector(memory.id)
        cosine = 0.0
        if vec is not None and centroid is not None:
            cosine = max(0.0, float(np.dot(vec, centroid)))
        ctx = set(context_of(memory.tool_name, memory.key_dict()).items())
        overlap = jaccard(ctx, set(pattern.claim.context.items()))
        recency = self.temporal_proximity(memory.created_at, last_evidence_at or pattern.last_evidence_at)
        return cfg.embed_weight * cosine + cfg.key_weight * overlap + cfg.time_weight * recency

    def plan(self, batch: list[Memory]) -> DetectionPlan:
        """Decide every assignment for the batch in one sequential pass."""
        cfg = self.config
        plan = DetectionPlan()
        open_patterns = self.patterns.open()
        centroids = {p.id: self.index.centroid(p.supporting_ids) for p in open_patterns}
        last_seen = {p.id: p.last_evidence_at for p in open_patterns}

        leftovers: list[Memory] = []
        for memory in sorted(batch, key=lambda m: (m.created_at, m.id)):
            if self.patterns.owner_of(memory.id) is not None:
                continue
            best: tuple[float, float, int] | None = None
            for p in open_patterns:
                s = self.score(memory, p, centroids[p.id], last_seen[p.id])
                if s <= cfg.attach_threshold:
                    continue
                # Higher score, then higher confidence, then lower id.
                key = (round(s, 9), p.confidence, -p.id)
                if best is None or key > best:
                    best = key
            if best is None:
                leftovers.append(memory)
                continue
            pattern_id = -best[2]
            plan.assignments.setdefault(pattern_id, []).append(memory.id)
            plan.scores[memory.id] = best[0]
            if memory.created_at > last_seen[pattern_id]:
                last_seen[pattern_id] = memory.created_at

        plan.groups = self._cluster(leftovers)
        grouped = {mid for g in plan.groups for mid in g}
        plan.unassigned = [m.id for m in leftovers if m.id not in grouped]
        logger.info("detection_planned", batch=len(batch), attached=plan.attached,
                    groups=len(plan.groups), unassigned=len(plan.unassigned))
        return plan

    def _cluster(self, memories: list[Memory]) -> list[list[int]]:
        cfg = self.config
        if len(memories) < cfg.min_cluster_size:
            return []
        contexts = [set(context_of(m.tool_name, m.key_dict()).items()) for m in memories]
        uf = _UnionFind(len(memories))
        for i in range(len(memories)):
            for j in range(i + 1, len(memories)):
                if jaccard(contexts[i], contexts[j]) >= cfg.cluster_threshold:
                    uf.union(i, j)
        buckets: dict[int, list[int]] = {}
        for i, m in enumerate(memories):
            buckets.setdefault(uf.find(i), []).append(m.id)
        groups = [ids for ids in buckets.values() if len(ids) >= cfg.min_cluster_size]
        groups.sort(key=lambda ids: (-len(ids), ids[0]))
        return groups[: cfg.max_clusters_per_run]
