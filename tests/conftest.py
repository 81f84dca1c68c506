from __future__ import annotations

import hashlib
import re
from datetime import timedelta

import numpy as np
import pytest

from engram.config import Config, EmbeddingConfig, PublishConfig
from engram.core import Engram
from engram.utils import utcnow

DIMS = 256

_CMD_RE = re.compile(r"\b(?:command|subcommand)=\S+")


class CommandEmbedder:
    """Deterministic embedder: only the command and subcommand keys contribute."""

    model = "command-stub"

    def __init__(self, dims: int = DIMS) -> None:
        self.dims = dims
        self.calls = 0
        self.fail = False

    def _encode(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dims, dtype=np.float32)
        tokens = _CMD_RE.findall(text) or [text]
        for tok in tokens:
            h = int.from_bytes(hashlib.sha256(tok.encode()).digest()[:4], "little")
            vec[h % self.dims] += 1.0
        return vec / np.linalg.norm(vec)

    async def embed(self, texts: list[str]) -> np.ndarray:
        return np.stack([await self.embed_single(t) for t in texts])

    async def embed_single(self, text: str) -> np.ndarray:
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding backend down")
        return self._encode(text)

    async def close(self) -> None:
        return None


def make_config(tmp_path, auto_publish: bool = False, **overrides) -> Config:
    return Config.load(
        data_dir=tmp_path / "data",
        embedding=EmbeddingConfig(provider="hash", dims=DIMS),
        publish=PublishConfig(rules_dir=tmp_path / "rules", auto_publish=auto_publish,
                              min_confidence=0.7),
        **overrides,
    )


def bash(session: str, command: str, at, keys: dict | None = None, error: str | None = None) -> dict:
    event = {
        "session_id": session,
        "tool_name": "Bash",
        "tool_input": {"command": command},
        "timestamp": at.isoformat(),
    }
    if keys:
        event["keys"] = keys
    if error:
        event["error"] = error
    return event


@pytest.fixture
def base_time():
    return utcnow() - timedelta(hours=3)


@pytest.fixture
def embedder():
    return CommandEmbedder()


@pytest.fixture
def engram_factory(tmp_path, embedder):
    created: list[Engram] = []

    def _make(auto_publish: bool = False, **overrides) -> Engram:
        eg = Engram(make_config(tmp_path, auto_publish=auto_publish, **overrides), embedder=embedder)
        created.append(eg)
        return eg

    yield _make
    for eg in created:
        try:
            eg.store.close()
        except Exception:
            pass


def scenario_a(eg: Engram, base) -> None:
    """Three `bun test` runs, each followed a minute later by `git commit`."""
    for i in range(3):
        t = base + timedelta(seconds=600 * i)
        eg.capture(bash("s1", "bun test", t))
        eg.capture(bash("s1", "git commit -m wip", t + timedelta(seconds=60)))


def scenario_b(eg: Engram, base) -> None:
    """A `git commit` with no preceding test run, tagged docs-only."""
    eg.capture(bash("s1", "git commit -m wip", base + timedelta(seconds=2400),
                    keys={"docs-only": "true"}))


def pattern_for(eg: Engram, action: str):
    for p in eg.patterns.all():
        if p.claim.action == action:
            return p
    return None
