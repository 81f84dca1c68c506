"""Embedding backends.

Every backend turns text into float32 vectors of a fixed ``dims``. Failures
surface as exceptions; callers decide whether they are fatal.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
from typing import Protocol, runtime_checkable

import httpx
import numpy as np

from engram.config import EmbeddingConfig


@runtime_checkable
class EmbeddingBackend(Protocol):
    dims: int

    async def embed(self, texts: list[str]) -> np.ndarray: ...
    async def embed_single(self, text: str) -> np.ndarray: ...
    async def close(self) -> None: ...


class _HTTPEmbedder:
    """Shared client handling for remote embedding APIs."""

    model: str = ""

    def __init__(self, base_url: str, dims: int, timeout: float, headers: dict[str, str] | None = None) -> None:
        self.base_url = base_url
        self.dims = dims
        self.timeout = timeout
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=self._headers, timeout=self.timeout
            )
        return self._client

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def embed(self, texts: list[str]) -> np.ndarray:
        raise NotImplementedError

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAIEmbedder(_HTTPEmbedder):
    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dims: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        super().__init__(base_url, dims, timeout, {"Authorization": f"Bearer {self.api_key}"})
        self.model = model

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is required")
        client = await self._get_client()
        resp = await client.post(
            "/embeddings", json={"model": self.model, "input": texts, "dimensions": self.dims}
        )
        resp.raise_for_status()
        rows = sorted(resp.json().get("data", []), key=lambda x: x.get("index", 0))
        return np.array([x["embedding"] for x in rows], dtype=np.float32)


class OllamaEmbedder(_HTTPEmbedder):
    def __init__(
        self,
        model: str = "nomic-embed-text",
        dims: int = 768,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
    ) -> None:
        super().__init__(base_url, dims, timeout)
        self.model = model

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        client = await self._get_client()
        out: list[list[float]] = []
        for text in texts:
            resp = await client.post("/api/embeddings", json={"model": self.model, "prompt": text})
            resp.raise_for_status()
            out.append(resp.json().get("embedding", []))
        return np.array(out, dtype=np.float32)


class HashEmbedder:
    """Deterministic offline embedder using signed token hashing."""

    _TOKEN_RE = re.compile(r"[a-z0-9_.\-]+")
    model = "hash"

    def __init__(self, dims: int = 384) -> None:
        self.dims = max(32, int(dims))

    def _encode(self, text: str) -> np.ndarray:
        tokens = self._TOKEN_RE.findall((text or "").lower())
        vec = np.zeros((self.dims,), dtype=np.float32)
        if not tokens:
            return vec
        features = tokens + [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
        for feat in features:
            digest = hashlib.blake2b(feat.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dims
            vec[idx] += 1.0 if (digest[4] & 1) == 0 else -1.0
        norm = float(np.linalg.norm(vec))
        if norm > 0.0:
            vec /= norm
        return vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        return np.stack([self._encode(t) for t in texts]).astype(np.float32, copy=False)

    async def embed_single(self, text: str) -> np.ndarray:
        return self._encode(text)

    async def close(self) -> None:
        return None


class SentenceTransformerEmbedder:
    """Local semantic embedder. Needs the ``semantic`` extra."""

    def __init__(self, model: str = "all-MiniLM-L6-v2", dims: int = 384) -> None:
        self.model = model or "all-MiniLM-L6-v2"
        self.dims = int(dims)
        self._model = None

    def _ensure_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:
                raise RuntimeError(
                    "sentence-transformers is required for provider 'sbert'. "
                    "Install with: pip install 'engram[semantic]'"
                ) from exc
            self._model = SentenceTransformer(self.model)
        return self._model

    def _encode_sync(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        arr = np.asarray(
            self._ensure_model().encode(texts, normalize_embeddings=True, show_progress_bar=False),
            dtype=np.float32,
        )
        if arr.ndim == 1:
            arr = arr.reshape(1, -1)
        if arr.shape[1] > self.dims:
            arr = arr[:, : self.dims]
        elif arr.shape[1] < self.dims:
            arr = np.pad(arr, ((0, 0), (0, self.dims - arr.shape[1])))
        return arr

    async def embed(self, texts: list[str]) -> np.ndarray:
        return await asyncio.to_thread(self._encode_sync, texts)

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        return None


def create_embedder(config: EmbeddingConfig | None = None) -> EmbeddingBackend:
    cfg = config or EmbeddingConfig()
    provider = (cfg.provider or "hash").strip().lower()
    if provider in {"hash", "localhash", "default"}:
        return HashEmbedder(dims=cfg.dims)
    if provider == "openai":
        return OpenAIEmbedder(
            model=cfg.model or "text-embedding-3-small", dims=cfg.dims,
            base_url=cfg.base_url or "https://api.openai.com/v1", timeout=cfg.timeout,
        )
    if provider in {"ollama", "local"}:
        return OllamaEmbedder(
            model=cfg.model or "nomic-embed-text", dims=cfg.dims,
            base_url=cfg.base_url or "http://127.0.0.1:11434", timeout=cfg.timeout,
        )
    if provider in {"sbert", "sentence-transformers", "sentence_transformers"}:
        return SentenceTransformerEmbedder(model=cfg.model or "all-MiniLM-L6-v2", dims=cfg.dims)
    raise ValueError(f"Unsupported embedding provider: {cfg.provider}")
