"""Embedding providers and abstractions."""

from engram.embeddings.backends import (
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    create_embedder,
)
from engram.embeddings.cache import CachedEmbedder

__all__ = [
    "EmbeddingBackend",
    "CachedEmbedder",
    "OpenAIEmbedder",
    "OllamaEmbedder",
    "HashEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
]
