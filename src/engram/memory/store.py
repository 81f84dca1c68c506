"""Memory Store: append-only record of captured tool interactions.

The only mutation after append is :meth:`MemoryStore.touch` (tier and
reinforcement time) plus the dedicated :meth:`MemoryStore.expire` path.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import structlog

from engram.config import IngestConfig
from engram.exceptions import DuplicateKind, InvalidTransition
from engram.storage.sqlite_store import SQLiteStore
from engram.types import TIER_ORDER, AuditEvent, Memory, Tier

logger = structlog.get_logger(__name__)


def check_tier_move(current: Tier | None, target: Tier, current_at: datetime,
                    reinforced_at: datetime) -> None:
    """Raise unless ``current -> target`` is one step forward or a reinforcement reset."""
    if current is None:
        raise InvalidTransition("memory is expired", {"target": target.value})
    if target is Tier.WORKING:
        if reinforced_at < current_at:
            raise InvalidTransition(
                "reinforcement must not move reinforced_at backwards",
                {"current": current_at.isoformat(), "requested": reinforced_at.isoformat()},
            )
        return
    step = TIER_ORDER.index(target) - TIER_ORDER.index(current)
    if step != 1:
        raise InvalidTransition(
            "tier may only advance one step", {"from": current.value, "to": target.value}
        )


class MemoryStore:
    def __init__(
        self,
        store: SQLiteStore,
        config: IngestConfig | None = None,
        on_append: Callable[[int], object] | None = None,
    ) -> None:
        self.store = store
        self.config = config or IngestConfig()
        self._on_append = on_append

    def append(self, memory: Memory) -> int:
        window = timedelta(seconds=self.config.debounce_seconds)
        existing = self.store.find_recent_duplicate(
            memory.session_id, memory.raw_hash, memory.created_at - window
        )
        if existing is not None:
            raise DuplicateKind(memory.session_id, memory.raw_hash, existing)

        earlier = self.store.memories_with_hash(memory.raw_hash, before=memory.created_at)
        with self.store.transaction():
            self.store.ensure_session(memory.session_id, memory.created_at)
            memory_id = self.store.insert_memory(memory)
            for prior in earlier:
                if prior.reinforced_at and prior.reinforced_at <= memory.created_at:
                    self._write_tier(prior, Tier.WORKING, memory.created_at, reason="recurrence")
        memory.id = memory_id
        logger.debug("memory_appended", memory_id=memory_id, session_id=memory.session_id,
                     tool=memory.tool_name, reinforced=len(earlier))
        if self._on_append is not None:
            self._on_append(memory_id)
        return memory_id

    def get(self, memory_id: int) -> Memory | None:
        return self.store.get_memory(memory_id)

    def get_many(self, memory_ids: list[int]) -> dict[int, Memory]:
        return self.store.get_memories(memory_ids)

    def query_by_keys(self, keys: dict[str, str], limit: int = 50) -> list[Memory]:
        return self.store.query_memories_by_keys(keys, limit=limit)

    def query_by_tier(self, tier: Tier, limit: int | None = None) -> list[Memory]:
        return self.store.query_memories_by_tier(tier, limit=limit)

    def touch(self, memory_id: int, tier: Tier, reinforced_at: datetime | None = None) -> Memory:
        memory = self.store.get_memory(memory_id)
        if memory is None:
            raise InvalidTransition("unknown memory", {"memory_id": memory_id})
        current_at = memory.reinforced_at or memory.created_at
        new_at = reinforced_at or current_at
        check_tier_move(memory.tier, tier, current_at, new_at)
        self._write_tier(memory, tier, new_at, reason="touch")
        memory.tier = tier
        memory.reinforced_at = new_at
        return memory

    def reinforce(self, memory_id: int, at: datetime) -> bool:
        """Reset to working. Silently skips expired memories and older timestamps."""
        memory = self.store.get_memory(memory_id)
        if memory is None or memory.tier is None:
            return False
        if memory.reinforced_at and at < memory.reinforced_at:
            return False
        self._write_tier(memory, Tier.WORKING, at, reason="reinforce")
        return True

    def expire(self, memory_id: int) -> None:
        memory = self.store.get_memory(memory_id)
        if memory is None or memory.tier is None:
            return
        self._write_tier(memory, None, memory.reinforced_at or memory.created_at, reason="expire")

    def start_session(self, session_id: str, at: datetime) -> None:
        self.store.ensure_session(session_id, at)

    def end_session(self, session_id: str, at: datetime) -> bool:
        return self.store.end_session(session_id, at)

    def _write_tier(self, memory: Memory, tier: Tier | None, at: datetime, reason: str) -> None:
        self.store.update_memory_tier(memory.id, tier, at)
        if memory.tier != tier:
            self.store.insert_audit_event(AuditEvent(
                action="tier",
                target_type="memory",
                target_id=str(memory.id),
                detail=f"{memory.tier.value if memory.tier else 'expired'}->"
                       f"{tier.value if tier else 'expired'} ({reason})",
            ))
