"""engram configuration.

Read once at startup. Environment variables only provide defaults; explicit
values passed to :meth:`Config.load` win.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from engram.exceptions import ConfigError

_TRUE = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw and raw.strip() else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw and raw.strip() else default


def _default_data_dir() -> Path:
    return Path(os.environ.get("ENGRAM_DATA_DIR", ".engram"))


def _default_rules_dir() -> Path:
    return Path(os.environ.get("ENGRAM_RULES_DIR", ".claude/rules/engram"))


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("ENGRAM_EMBED_PROVIDER", "hash"))
    model: str = Field(default_factory=lambda: os.environ.get("ENGRAM_EMBED_MODEL", ""))
    dims: int = Field(default=384, ge=8)
    base_url: str = ""
    timeout: float = 30.0
    cache: bool = True


class IngestConfig(BaseModel):
    debounce_seconds: float = Field(default=5.0, ge=0.0)
    queue_maxsize: int = Field(default=1024, ge=1)
    max_input_chars: int = 500
    max_output_chars: int = 200


class IndexConfig(BaseModel):
    min_similarity: float = Field(default=0.82, ge=-1.0, le=1.0)
    index_file: str = "memory.index"


class DetectorConfig(BaseModel):
    embed_weight: float = Field(default=0.4, ge=0.0)
    key_weight: float = Field(default=0.4, ge=0.0)
    time_weight: float = Field(default=0.2, ge=0.0)
    temporal_scale_minutes: float = Field(default=60.0, gt=0.0)
    attach_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    cluster_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    min_cluster_size: int = Field(default=2, ge=1)
    max_clusters_per_run: int = 100
    sequence_window_seconds: float = Field(default=120.0, gt=0.0)
    lookback_hours: int = 24 * 30
    batch_limit: int = 2000
    # Older unassigned memories re-offered each cycle, newest first.
    leftover_limit: int = Field(default=200, ge=0)


class DialecticConfig(BaseModel):
    min_evidence: int = Field(
        default_factory=lambda: _env_int("ENGRAM_RULES_MIN_MEMORIES", 3), ge=1
    )
    prior_smoothing: float = Field(default=1.0, ge=0.0)
    # Outcome overlap below this counts as a contradiction.
    contradiction_threshold: float = Field(default=1.0, ge=0.0, le=1.0)
    min_discrimination: float = Field(default=0.5, ge=0.0, le=1.0)
    # 0 keeps uncontested theses out of synthesis.
    uncontested_synthesis_evidence: int = Field(default=0, ge=0)
    max_parallel: int = Field(default=4, ge=1)


class LifecycleConfig(BaseModel):
    session_decay: float = Field(default=0.85, gt=0.0, le=1.0)
    retire_floor: float = Field(default=0.2, ge=0.0, le=1.0)
    retire_after_sessions: int = Field(default=10, ge=1)
    expiry_sessions: int = Field(default=30, ge=1)


class PublishConfig(BaseModel):
    rules_dir: Path = Field(default_factory=_default_rules_dir)
    auto_publish: bool = Field(default_factory=lambda: _env_bool("ENGRAM_RULES_AUTO_PUBLISH", True))
    min_confidence: float = Field(
        default_factory=lambda: _env_float("ENGRAM_RULES_MIN_CONFIDENCE", 0.7), ge=0.0, le=1.0
    )
    max_examples: int = 3


class SummarizerConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("ENGRAM_SUMMARIZER", "template"))
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 120


class ConsolidationConfig(BaseModel):
    interval_seconds: float = 300.0
    lease_ttl_seconds: float = 600.0


class APIConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8421
    bearer_token: str = Field(default_factory=lambda: os.environ.get("ENGRAM_API_TOKEN", ""))


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    log_level: str = Field(default_factory=lambda: os.environ.get("ENGRAM_LOG_LEVEL", "WARNING"))
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    dialectic: DialecticConfig = Field(default_factory=DialecticConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    publish: PublishConfig = Field(default_factory=PublishConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @classmethod
    def load(cls, **overrides) -> Config:
        try:
            return cls(**overrides)
        except (ValidationError, ValueError) as exc:
            raise ConfigError("invalid configuration", {"error": str(exc)}) from exc

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "engram.db"

    @property
    def index_dir(self) -> Path:
        return self.data_dir / "index"

    @property
    def index_path(self) -> Path:
        return self.index_dir / self.index.index_file

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent, self.index_dir]:
            d.mkdir(parents=True, exist_ok=True)
