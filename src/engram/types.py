"""Core data types."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from engram.utils import ensure_utc, utcnow


class Tier(str, Enum):
    WORKING = "working"
    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"


TIER_ORDER = [Tier.WORKING, Tier.SHORT_TERM, Tier.LONG_TERM]


class PatternState(str, Enum):
    CANDIDATE = "candidate"
    THESIS = "thesis"
    ANTITHESIS = "antithesis"
    SYNTHESIS = "synthesis"
    PUBLISHED = "published"
    RETIRED = "retired"


OPEN_STATES = frozenset({
    PatternState.CANDIDATE,
    PatternState.THESIS,
    PatternState.ANTITHESIS,
    PatternState.SYNTHESIS,
    PatternState.PUBLISHED,
})


class Relation(str, Enum):
    PRECEDED_BY = "preceded_by"
    FOLLOWED_BY = "followed_by"
    NONE = "none"


class MemberRole(str, Enum):
    EVIDENCE = "evidence"
    COUNTER = "counter"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    WITHDRAWN = "withdrawn"


# --- Capture / memory ---

class SemanticKey(BaseModel):
    key: str
    value: str


class CaptureEvent(BaseModel):
    """A raw tool invocation handed over by the hook layer."""
    session_id: str = Field(min_length=1)
    tool_name: str = Field(min_length=1)
    input: dict[str, Any] | str = Field(default_factory=dict)
    output: Any = ""
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    keys: dict[str, str] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class Memory(BaseModel):
    id: int | None = None
    session_id: str
    tool_name: str
    content: str
    raw_hash: str = ""
    keys: list[SemanticKey] = Field(default_factory=list)
    tier: Tier | None = Tier.WORKING
    created_at: datetime = Field(default_factory=utcnow)
    reinforced_at: datetime | None = None
    has_vector: bool = False

    def key_dict(self) -> dict[str, str]:
        return {k.key: k.value for k in self.keys}

    def embedding_text(self) -> str:
        pairs = " ".join(f"{k.key}={k.value}" for k in self.keys)
        return f"{self.tool_name} {pairs}\n{self.content}"


# --- Patterns ---

class Condition(BaseModel):
    key: str
    value: str
    negated: bool = False

    def holds(self, context: dict[str, str]) -> bool:
        return (context.get(self.key) == self.value) != self.negated

    def render(self) -> str:
        op = "!=" if self.negated else "="
        return f"{self.key}{op}{self.value}"


class PatternClaim(BaseModel):
    """Structured form of a pattern statement."""
    action: str
    relation: Relation = Relation.NONE
    related_action: str | None = None
    failed: bool = False
    context: dict[str, str] = Field(default_factory=dict)
    exceptions: list[Condition] = Field(default_factory=list)
    noise: bool = False

    def excepted(self, context: dict[str, str]) -> bool:
        return any(c.holds(context) for c in self.exceptions)


class Pattern(BaseModel):
    id: int | None = None
    state: PatternState = PatternState.CANDIDATE
    statement: str = ""
    claim: PatternClaim
    confidence: float = 0.0
    evidence_ids: list[int] = Field(default_factory=list)
    counter_ids: list[int] = Field(default_factory=list)
    resolved_ids: list[int] = Field(default_factory=list)
    contradiction_count: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    reinforced_at: datetime = Field(default_factory=utcnow)
    last_evidence_at: datetime = Field(default_factory=utcnow)

    @property
    def open_counter_ids(self) -> list[int]:
        resolved = set(self.resolved_ids)
        return [m for m in self.counter_ids if m not in resolved]

    @property
    def evidence_count(self) -> int:
        # Resolved counter-examples support the conditional statement.
        return len(self.evidence_ids) + len(self.resolved_ids)

    @property
    def member_ids(self) -> list[int]:
        return [*self.evidence_ids, *self.counter_ids]

    @property
    def supporting_ids(self) -> list[int]:
        return [*self.evidence_ids, *self.resolved_ids]


# --- Rules ---

class RuleArtifact(BaseModel):
    pattern_id: int
    version: int
    confidence: float
    statement: str
    title: str
    scope_globs: list[str] = Field(default_factory=list)
    when_to_apply: list[str] = Field(default_factory=list)
    examples: list[str] = Field(default_factory=list)
    related_tools: list[str] = Field(default_factory=list)
    session_count: int = 0
    content_hash: str = ""
    published_at: datetime = Field(default_factory=utcnow)


class RuleRecord(BaseModel):
    id: int | None = None
    pattern_id: int
    version: int
    confidence: float
    statement: str
    scope_globs: list[str] = Field(default_factory=list)
    content_hash: str
    file_path: str = ""
    file_hash: str = ""
    status: RuleStatus = RuleStatus.ACTIVE
    published_at: datetime = Field(default_factory=utcnow)


class RuleRef(BaseModel):
    pattern_id: int
    version: int
    path: str
    content_hash: str
    published_at: datetime


class NoOp(BaseModel):
    pattern_id: int
    reason: str


# --- Recall / reports ---

class RecallHit(BaseModel):
    kind: Literal["memory", "pattern"]
    id: int
    score: float
    timestamp: datetime
    text: str
    source: str = "vector"
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditEvent(BaseModel):
    id: int | None = None
    action: str
    target_type: str
    target_id: str
    detail: str = ""
    outcome: str = "ok"
    created_at: datetime = Field(default_factory=utcnow)


class CycleReport(BaseModel):
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    skipped: str | None = None
    cancelled: bool = False
    backfilled: int = 0
    attached: int = 0
    seeded: list[int] = Field(default_factory=list)
    contradictions: int = 0
    transitions: list[tuple[int, str, str]] = Field(default_factory=list)
    promoted_short_term: int = 0
    promoted_long_term: int = 0
    expired: int = 0
    retired: list[int] = Field(default_factory=list)
    published: list[RuleRef] = Field(default_factory=list)
    noops: list[NoOp] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
