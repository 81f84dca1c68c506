"""Durable store and derived similarity index."""

from engram.storage.faiss_store import SimilarityIndex
from engram.storage.sqlite_store import SQLiteStore

__all__ = ["SQLiteStore", "SimilarityIndex"]
