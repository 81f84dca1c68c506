"""Memory store and embedding indexer."""

from engram.memory.indexer import EmbeddingIndexer
from engram.memory.store import MemoryStore, check_tier_move

__all__ = ["EmbeddingIndexer", "MemoryStore", "check_tier_move"]
