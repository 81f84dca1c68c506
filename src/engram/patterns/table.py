"""In-memory pattern table, rebuilt from SQLite at startup.

Components read snapshots from here and hand back changed copies through
:meth:`PatternTable.commit`, which persists them in one transaction before the
in-memory view is replaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog

from engram.storage.sqlite_store import SQLiteStore
from engram.types import OPEN_STATES, AuditEvent, MemberRole, Pattern, PatternState
from engram.utils import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class Membership:
    memory_id: int
    role: MemberRole
    created_at: datetime
    resolved: bool = False


class PatternTable:
    def __init__(self, store: SQLiteStore) -> None:
        self.store = store
        self._patterns: dict[int, Pattern] = {}
        self._owner: dict[int, int] = {}

    def load(self) -> int:
        self._patterns = {p.id: p for p in self.store.list_patterns()}
        self._owner = {
            mid: p.id for p in self._patterns.values() for mid in p.member_ids
        }
        logger.info("pattern_table_loaded", patterns=len(self._patterns))
        return len(self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def get(self, pattern_id: int) -> Pattern | None:
        pattern = self._patterns.get(pattern_id)
        return pattern.model_copy(deep=True) if pattern else None

    def all(self, states: set[PatternState] | frozenset[PatternState] | None = None) -> list[Pattern]:
        out = [p for p in self._patterns.values() if states is None or p.state in states]
        return [p.model_copy(deep=True) for p in sorted(out, key=lambda p: p.id)]

    def open(self) -> list[Pattern]:
        return self.all(OPEN_STATES)

    def owner_of(self, memory_id: int) -> int | None:
        return self._owner.get(memory_id)

    def create(self, pattern: Pattern, members: list[Membership]) -> Pattern:
        with self.store.transaction():
            pattern.id = self.store.insert_pattern(pattern)
            for m in members:
                self.store.add_member(pattern.id, m.memory_id, m.role, m.created_at, m.resolved)
            self._audit(pattern.id, "created", f"state={pattern.state.value}")
        self._install(pattern)
        return pattern.model_copy(deep=True)

    def commit(
        self,
        pattern: Pattern,
        members: list[Membership] | None = None,
        resolved: list[int] | None = None,
        transitions: list[tuple[PatternState, PatternState, str]] | None = None,
    ) -> Pattern:
        pattern.updated_at = utcnow()
        with self.store.transaction():
            self.store.update_pattern(pattern)
            for m in members or []:
                self.store.add_member(pattern.id, m.memory_id, m.role, m.created_at, m.resolved)
            if resolved:
                self.store.resolve_members(pattern.id, resolved)
            for src, dst, reason in transitions or []:
                self._audit(pattern.id, "transition", f"{src.value}->{dst.value}: {reason}")
        self._install(pattern)
        return pattern.model_copy(deep=True)

    def _install(self, pattern: Pattern) -> None:
        self._patterns[pattern.id] = pattern.model_copy(deep=True)
        for mid in pattern.member_ids:
            self._owner[mid] = pattern.id

    def _audit(self, pattern_id: int, action: str, detail: str) -> None:
        self.store.insert_audit_event(AuditEvent(
            action=action, target_type="pattern", target_id=str(pattern_id), detail=detail,
        ))

    def counts(self) -> dict[str, int]:
        out = {s.value: 0 for s in PatternState}
        for p in self._patterns.values():
            out[p.state.value] += 1
        return out
