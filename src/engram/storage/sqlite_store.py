"""SQLite system of record: memories, patterns, rules, sessions and leases."""

from __future__ import annotations

import re
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

from engram.exceptions import StorageError, StoreCorruption
from engram.types import (
    AuditEvent,
    Memory,
    MemberRole,
    Pattern,
    PatternClaim,
    PatternState,
    RuleRecord,
    RuleStatus,
    SemanticKey,
    Tier,
)
from engram.utils import iso_str, json_dumps, json_loads, parse_iso, utcnow

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    ended_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_started ON sessions(started_at);

CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    content TEXT NOT NULL,
    raw_hash TEXT NOT NULL,
    tier TEXT,
    created_at TEXT NOT NULL,
    reinforced_at TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(id)
);
CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id, created_at);
CREATE INDEX IF NOT EXISTS idx_memories_hash ON memories(raw_hash, created_at);
CREATE INDEX IF NOT EXISTS idx_memories_tier ON memories(tier);

CREATE TABLE IF NOT EXISTS memory_keys (
    memory_id INTEGER NOT NULL,
    position INTEGER NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (memory_id, position),
    FOREIGN KEY (memory_id) REFERENCES memories(id)
);
CREATE INDEX IF NOT EXISTS idx_memory_keys_kv ON memory_keys(key, value);

CREATE TABLE IF NOT EXISTS memory_vectors (
    memory_id INTEGER PRIMARY KEY,
    vector BLOB NOT NULL,
    dims INTEGER NOT NULL,
    model TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    FOREIGN KEY (memory_id) REFERENCES memories(id)
);

CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    content, content=memories, content_rowid=id
);

CREATE TABLE IF NOT EXISTS patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    state TEXT NOT NULL,
    statement TEXT NOT NULL DEFAULT '',
    claim TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.0,
    contradiction_count INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    reinforced_at TEXT NOT NULL,
    last_evidence_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_patterns_state ON patterns(state);

CREATE TABLE IF NOT EXISTS pattern_members (
    pattern_id INTEGER NOT NULL,
    memory_id INTEGER NOT NULL UNIQUE,
    role TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    PRIMARY KEY (pattern_id, memory_id),
    FOREIGN KEY (pattern_id) REFERENCES patterns(id),
    FOREIGN KEY (memory_id) REFERENCES memories(id)
);

CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern_id INTEGER NOT NULL,
    version INTEGER NOT NULL,
    confidence REAL NOT NULL,
    statement TEXT NOT NULL,
    scope TEXT NOT NULL DEFAULT '[]',
    content_hash TEXT NOT NULL,
    file_path TEXT NOT NULL DEFAULT '',
    file_hash TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'active',
    published_at TEXT NOT NULL,
    UNIQUE (pattern_id, version),
    FOREIGN KEY (pattern_id) REFERENCES patterns(id)
);
CREATE INDEX IF NOT EXISTS idx_rules_status ON rules(status);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    detail TEXT NOT NULL DEFAULT '',
    outcome TEXT NOT NULL DEFAULT 'ok',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_log(target_type, target_id);

CREATE TABLE IF NOT EXISTS embedding_cache (
    text_hash TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS leases (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

# Memory content is immutable, so FTS only tracks inserts and deletes.
_FTS_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, content) VALUES (new.id, new.content);
END;
CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content)
    VALUES ('delete', old.id, old.content);
END;
"""

_MEMORY_SELECT = """
SELECT m.*, (v.memory_id IS NOT NULL) AS has_vector
FROM memories m
LEFT JOIN memory_vectors v ON v.memory_id = m.id
"""


def _sanitize_fts_query(query: str) -> str:
    """Quote each token so punctuation never reaches FTS5 as syntax.

    Tokens are OR-ed: keyword recall is a fallback and favors recall.
    """
    cleaned = re.sub(r"[^\w\s]", " ", query)
    tokens = list(dict.fromkeys(cleaned.split()))
    if not tokens:
        return '""'
    return " OR ".join(f'"{t}"' for t in tokens)


class SQLiteStore:
    """Transactional record store. Every other structure is derived from it."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=30000")
            self._check_integrity()
            self._init_schema()
        except sqlite3.DatabaseError as exc:
            raise StoreCorruption(
                "database failed to open", {"path": str(self.db_path), "error": str(exc)}
            ) from exc

    def _check_integrity(self) -> None:
        row = self._conn.execute("PRAGMA quick_check").fetchone()
        if row is None or row[0] != "ok":
            raise StoreCorruption(
                "integrity check failed",
                {"path": str(self.db_path), "result": row[0] if row else None},
            )

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(_SCHEMA)
        cur.executescript(_FTS_TRIGGERS)
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()
        version = self.get_meta("schema_version")
        if version != str(SCHEMA_VERSION):
            raise StoreCorruption("unsupported schema version", {"found": version})

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one commit. Nested blocks join the outer one."""
        with self._lock:
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self._conn.commit()

    def _commit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key=?", (key,)).fetchone()
        return row[0] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO meta(key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            self._commit()

    def get_watermark(self, key: str) -> tuple[datetime, int] | None:
        value = self.get_meta(key)
        if not value:
            return None
        ts, _, memory_id = value.rpartition("|")
        return parse_iso(ts), int(memory_id)

    def set_watermark(self, key: str, mark: tuple[datetime, int]) -> None:
        self.set_meta(key, f"{iso_str(mark[0])}|{mark[1]}")

    # --- Sessions ---

    def ensure_session(self, session_id: str, started_at: datetime) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO sessions(id, started_at) VALUES (?, ?)",
                (session_id, iso_str(started_at)),
            )
            self._commit()

    def end_session(self, session_id: str, ended_at: datetime) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE sessions SET ended_at=? WHERE id=?", (iso_str(ended_at), session_id)
            )
            self._commit()
        return cur.rowcount > 0

    def session_starts(self) -> list[datetime]:
        rows = self._conn.execute("SELECT started_at FROM sessions ORDER BY started_at").fetchall()
        return [parse_iso(r[0]) for r in rows]

    def count_sessions(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]

    # --- Memories ---

    def insert_memory(self, memory: Memory) -> int:
        reinforced = memory.reinforced_at or memory.created_at
        with self.transaction():
            cur = self._conn.execute(
                """INSERT INTO memories(session_id, tool_name, content, raw_hash, tier,
                   created_at, reinforced_at) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    memory.session_id, memory.tool_name, memory.content, memory.raw_hash,
                    memory.tier.value if memory.tier else None,
                    iso_str(memory.created_at), iso_str(reinforced),
                ),
            )
            memory_id = int(cur.lastrowid)
            self._conn.executemany(
                "INSERT INTO memory_keys(memory_id, position, key, value) VALUES (?, ?, ?, ?)",
                [(memory_id, i, k.key, k.value) for i, k in enumerate(memory.keys)],
            )
        return memory_id

    def get_memory(self, memory_id: int) -> Memory | None:
        row = self._conn.execute(_MEMORY_SELECT + " WHERE m.id=?", (memory_id,)).fetchone()
        if not row:
            return None
        return self._rows_to_memories([row])[0]

    def get_memories(self, memory_ids: list[int]) -> dict[int, Memory]:
        if not memory_ids:
            return {}
        out: dict[int, Memory] = {}
        ids = list(dict.fromkeys(memory_ids))
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            marks = ",".join("?" * len(chunk))
            rows = self._conn.execute(_MEMORY_SELECT + f" WHERE m.id IN ({marks})", chunk).fetchall()
            for m in self._rows_to_memories(rows):
                out[m.id] = m
        return out

    def find_recent_duplicate(self, session_id: str, raw_hash: str, since: datetime) -> int | None:
        row = self._conn.execute(
            """SELECT id FROM memories WHERE session_id=? AND raw_hash=? AND created_at>=?
               ORDER BY created_at DESC LIMIT 1""",
            (session_id, raw_hash, iso_str(since)),
        ).fetchone()
        return int(row[0]) if row else None

    def memories_with_hash(self, raw_hash: str, before: datetime) -> list[Memory]:
        rows = self._conn.execute(
            _MEMORY_SELECT + """ WHERE m.raw_hash=? AND m.created_at<? AND m.tier IS NOT NULL
            ORDER BY m.created_at""",
            (raw_hash, iso_str(before)),
        ).fetchall()
        return self._rows_to_memories(rows)

    def query_memories_by_keys(self, keys: dict[str, str], limit: int = 50) -> list[Memory]:
        clauses = []
        params: list[Any] = []
        for key, value in keys.items():
            clauses.append(
                "EXISTS (SELECT 1 FROM memory_keys k WHERE k.memory_id=m.id AND k.key=? AND k.value=?)"
            )
            params.extend([key, value])
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        rows = self._conn.execute(
            _MEMORY_SELECT + where + " ORDER BY m.created_at DESC, m.id DESC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return self._rows_to_memories(rows)

    def query_memories_by_tier(self, tier: Tier, limit: int | None = None) -> list[Memory]:
        sql = _MEMORY_SELECT + " WHERE m.tier=? ORDER BY m.created_at, m.id"
        params: tuple[Any, ...] = (tier.value,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (tier.value, limit)
        return self._rows_to_memories(self._conn.execute(sql, params).fetchall())

    def update_memory_tier(self, memory_id: int, tier: Tier | None, reinforced_at: datetime) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE memories SET tier=?, reinforced_at=? WHERE id=?",
                (tier.value if tier else None, iso_str(reinforced_at), memory_id),
            )
            self._commit()

    def neighbor(self, memory: Memory, window_seconds: float, before: bool) -> Memory | None:
        """Closest memory in the same session within the window, on one side."""
        span = timedelta(seconds=window_seconds)
        ts = iso_str(memory.created_at)
        if before:
            sql = _MEMORY_SELECT + """ WHERE m.session_id=? AND m.id!=?
                AND (m.created_at<? OR (m.created_at=? AND m.id<?)) AND m.created_at>=?
                ORDER BY m.created_at DESC, m.id DESC LIMIT 1"""
            bound = iso_str(memory.created_at - span)
        else:
            sql = _MEMORY_SELECT + """ WHERE m.session_id=? AND m.id!=?
                AND (m.created_at>? OR (m.created_at=? AND m.id>?)) AND m.created_at<=?
                ORDER BY m.created_at, m.id LIMIT 1"""
            bound = iso_str(memory.created_at + span)
        row = self._conn.execute(
            sql, (memory.session_id, memory.id, ts, ts, memory.id, bound)
        ).fetchone()
        return self._rows_to_memories([row])[0] if row else None

    def unassigned_memories(self, since: datetime, settled_before: datetime,
                            limit: int = 2000,
                            after: tuple[datetime, int] | None = None,
                            through: tuple[datetime, int] | None = None,
                            newest_first: bool = False) -> list[Memory]:
        """Settled memories with a vector and no pattern.

        ``after`` keeps memories strictly past a ``(created_at, id)`` mark and
        ``through`` keeps those at or before one.
        """
        sql = _MEMORY_SELECT + """ WHERE v.memory_id IS NOT NULL AND m.tier IS NOT NULL
            AND m.created_at>=? AND m.created_at<=?
            AND NOT EXISTS (SELECT 1 FROM pattern_members p WHERE p.memory_id=m.id)"""
        params: list = [iso_str(since), iso_str(settled_before)]
        if after is not None:
            ts = iso_str(after[0])
            sql += " AND (m.created_at>? OR (m.created_at=? AND m.id>?))"
            params += [ts, ts, after[1]]
        if through is not None:
            ts = iso_str(through[0])
            sql += " AND (m.created_at<? OR (m.created_at=? AND m.id<=?))"
            params += [ts, ts, through[1]]
        order = "DESC" if newest_first else "ASC"
        sql += f" ORDER BY m.created_at {order}, m.id {order} LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return self._rows_to_memories(rows)

    def ids_without_vector(self, limit: int = 500) -> list[int]:
        rows = self._conn.execute(
            """SELECT m.id FROM memories m
               LEFT JOIN memory_vectors v ON v.memory_id = m.id
               WHERE v.memory_id IS NULL AND m.tier IS NOT NULL
               ORDER BY m.id LIMIT ?""",
            (limit,),
        ).fetchall()
        return [int(r[0]) for r in rows]

    def search_memories_fts(self, query: str, limit: int = 20) -> list[tuple[Memory, float]]:
        rows = self._conn.execute(
            """SELECT m.*, (v.memory_id IS NOT NULL) AS has_vector, bm25(memories_fts) AS score
               FROM memories_fts f
               JOIN memories m ON m.id = f.rowid
               LEFT JOIN memory_vectors v ON v.memory_id = m.id
               WHERE memories_fts MATCH ? AND m.tier IS NOT NULL
               ORDER BY score
               LIMIT ?""",
            (_sanitize_fts_query(query), limit),
        ).fetchall()
        memories = self._rows_to_memories(rows)
        # bm25 is negative, lower is better
        return [(m, -float(r["score"])) for m, r in zip(memories, rows)]

    def count_memories(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    def count_memories_by_tier(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT COALESCE(tier, 'expired') AS tier, COUNT(*) AS n FROM memories GROUP BY tier"
        ).fetchall()
        return {r["tier"]: r["n"] for r in rows}

    # --- Vectors ---

    def put_vector(self, memory_id: int, blob: bytes, dims: int, model: str) -> None:
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO memory_vectors(memory_id, vector, dims, model, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (memory_id, blob, dims, model, iso_str(utcnow())),
            )
            self._commit()

    def get_vector(self, memory_id: int) -> tuple[bytes, int] | None:
        row = self._conn.execute(
            "SELECT vector, dims FROM memory_vectors WHERE memory_id=?", (memory_id,)
        ).fetchone()
        return (row[0], row[1]) if row else None

    def iter_vectors(self) -> Iterator[tuple[int, bytes, int]]:
        cur = self._conn.execute(
            """SELECT v.memory_id, v.vector, v.dims FROM memory_vectors v
               JOIN memories m ON m.id = v.memory_id
               WHERE m.tier IS NOT NULL ORDER BY v.memory_id"""
        )
        for row in cur:
            yield int(row[0]), row[1], int(row[2])

    def count_vectors(self) -> int:
        return self._conn.execute(
            """SELECT COUNT(*) FROM memory_vectors v JOIN memories m ON m.id = v.memory_id
               WHERE m.tier IS NOT NULL"""
        ).fetchone()[0]

    # --- Patterns ---

    def insert_pattern(self, pattern: Pattern) -> int:
        with self._lock:
            cur = self._conn.execute(
                """INSERT INTO patterns(state, statement, claim, confidence, contradiction_count,
                   version, created_at, updated_at, reinforced_at, last_evidence_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    pattern.state.value, pattern.statement, pattern.claim.model_dump_json(),
                    pattern.confidence, pattern.contradiction_count, pattern.version,
                    iso_str(pattern.created_at), iso_str(pattern.updated_at),
                    iso_str(pattern.reinforced_at), iso_str(pattern.last_evidence_at),
                ),
            )
            self._commit()
        return int(cur.lastrowid)

    def update_pattern(self, pattern: Pattern) -> None:
        if pattern.id is None:
            raise StorageError("pattern has no id")
        with self._lock:
            self._conn.execute(
                """UPDATE patterns SET state=?, statement=?, claim=?, confidence=?,
                   contradiction_count=?, version=?, updated_at=?, reinforced_at=?,
                   last_evidence_at=? WHERE id=?""",
                (
                    pattern.state.value, pattern.statement, pattern.claim.model_dump_json(),
                    pattern.confidence, pattern.contradiction_count, pattern.version,
                    iso_str(pattern.updated_at), iso_str(pattern.reinforced_at),
                    iso_str(pattern.last_evidence_at), pattern.id,
                ),
            )
            self._commit()

    def add_member(self, pattern_id: int, memory_id: int, role: MemberRole,
                   created_at: datetime, resolved: bool = False) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    """INSERT INTO pattern_members(pattern_id, memory_id, role, resolved, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (pattern_id, memory_id, role.value, int(resolved), iso_str(created_at)),
                )
            except sqlite3.IntegrityError as exc:
                raise StorageError(
                    "memory already assigned", {"pattern_id": pattern_id, "memory_id": memory_id}
                ) from exc
            self._commit()

    def resolve_members(self, pattern_id: int, memory_ids: list[int]) -> None:
        with self._lock:
            self._conn.executemany(
                "UPDATE pattern_members SET resolved=1 WHERE pattern_id=? AND memory_id=?",
                [(pattern_id, mid) for mid in memory_ids],
            )
            self._commit()

    def pattern_of(self, memory_id: int) -> int | None:
        row = self._conn.execute(
            "SELECT pattern_id FROM pattern_members WHERE memory_id=?", (memory_id,)
        ).fetchone()
        return int(row[0]) if row else None

    def list_patterns(self, states: list[PatternState] | None = None) -> list[Pattern]:
        if states:
            marks = ",".join("?" * len(states))
            rows = self._conn.execute(
                f"SELECT * FROM patterns WHERE state IN ({marks}) ORDER BY id",
                [s.value for s in states],
            ).fetchall()
        else:
            rows = self._conn.execute("SELECT * FROM patterns ORDER BY id").fetchall()
        members = self._members_for([r["id"] for r in rows])
        return [self._row_to_pattern(r, members.get(r["id"], [])) for r in rows]

    def get_pattern(self, pattern_id: int) -> Pattern | None:
        row = self._conn.execute("SELECT * FROM patterns WHERE id=?", (pattern_id,)).fetchone()
        if not row:
            return None
        return self._row_to_pattern(row, self._members_for([pattern_id]).get(pattern_id, []))

    def count_patterns_by_state(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT state, COUNT(*) AS n FROM patterns GROUP BY state"
        ).fetchall()
        return {r["state"]: r["n"] for r in rows}

    def _members_for(self, pattern_ids: list[int]) -> dict[int, list[sqlite3.Row]]:
        out: dict[int, list[sqlite3.Row]] = {}
        if not pattern_ids:
            return out
        marks = ",".join("?" * len(pattern_ids))
        rows = self._conn.execute(
            f"""SELECT * FROM pattern_members WHERE pattern_id IN ({marks})
                ORDER BY created_at, memory_id""",
            pattern_ids,
        ).fetchall()
        for r in rows:
            out.setdefault(r["pattern_id"], []).append(r)
        return out

    # --- Rules ---

    def insert_rule(self, rule: RuleRecord) -> int:
        with self._lock:
            cur = self._conn.execute(
                """INSERT INTO rules(pattern_id, version, confidence, statement, scope,
                   content_hash, file_path, file_hash, status, published_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    rule.pattern_id, rule.version, rule.confidence, rule.statement,
                    json_dumps(rule.scope_globs), rule.content_hash, rule.file_path,
                    rule.file_hash, rule.status.value, iso_str(rule.published_at),
                ),
            )
            self._commit()
        return int(cur.lastrowid)

    def supersede_rules(self, pattern_id: int, below_version: int) -> int:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE rules SET status=? WHERE pattern_id=? AND version<? AND status=?",
                (RuleStatus.SUPERSEDED.value, pattern_id, below_version, RuleStatus.ACTIVE.value),
            )
            self._commit()
        return cur.rowcount

    def set_rule_status(self, rule_id: int, status: RuleStatus) -> None:
        with self._lock:
            self._conn.execute("UPDATE rules SET status=? WHERE id=?", (status.value, rule_id))
            self._commit()

    def active_rule(self, pattern_id: int) -> RuleRecord | None:
        row = self._conn.execute(
            "SELECT * FROM rules WHERE pattern_id=? AND status=? ORDER BY version DESC LIMIT 1",
            (pattern_id, RuleStatus.ACTIVE.value),
        ).fetchone()
        return self._row_to_rule(row) if row else None

    def list_rules(self, status: RuleStatus | None = None,
                   pattern_id: int | None = None) -> list[RuleRecord]:
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status=?")
            params.append(status.value)
        if pattern_id is not None:
            clauses.append("pattern_id=?")
            params.append(pattern_id)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM rules{where} ORDER BY pattern_id, version", params
        ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    # --- Audit ---

    def insert_audit_event(self, event: AuditEvent) -> int:
        with self._lock:
            cur = self._conn.execute(
                """INSERT INTO audit_log(action, target_type, target_id, detail, outcome, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (event.action, event.target_type, event.target_id, event.detail,
                 event.outcome, iso_str(event.created_at)),
            )
            self._commit()
        return int(cur.lastrowid)

    def list_audit_events(self, limit: int = 100, target_type: str | None = None,
                          target_id: str | None = None) -> list[AuditEvent]:
        clauses = []
        params: list[Any] = []
        if target_type:
            clauses.append("target_type=?")
            params.append(target_type)
        if target_id:
            clauses.append("target_id=?")
            params.append(target_id)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM audit_log{where} ORDER BY id LIMIT ?", (*params, limit)
        ).fetchall()
        return [
            AuditEvent(
                id=r["id"], action=r["action"], target_type=r["target_type"],
                target_id=r["target_id"], detail=r["detail"], outcome=r["outcome"],
                created_at=parse_iso(r["created_at"]),
            )
            for r in rows
        ]

    # --- Embedding Cache ---

    def get_cached_embedding(self, text_hash: str, model: str) -> bytes | None:
        row = self._conn.execute(
            "SELECT embedding FROM embedding_cache WHERE text_hash=? AND model=?",
            (text_hash, model),
        ).fetchone()
        return row[0] if row else None

    def cache_embedding(self, text_hash: str, embedding: bytes, model: str) -> None:
        with self._lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO embedding_cache(text_hash, embedding, model, created_at)
                   VALUES (?, ?, ?, ?)""",
                (text_hash, embedding, model, iso_str(utcnow())),
            )
            self._commit()

    # --- Leases ---

    def acquire_lease(self, name: str, owner: str, expires_at: datetime, now: datetime) -> bool:
        """Take or renew a named lease. False if someone else holds it."""
        with self._lock:
            if self._conn.in_transaction:
                self._conn.commit()
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT owner, expires_at FROM leases WHERE name=?", (name,)
                ).fetchone()
                if row and row["owner"] != owner and parse_iso(row["expires_at"]) > now:
                    self._conn.rollback()
                    return False
                self._conn.execute(
                    """INSERT INTO leases(name, owner, expires_at) VALUES (?, ?, ?)
                       ON CONFLICT(name) DO UPDATE SET owner=excluded.owner,
                       expires_at=excluded.expires_at""",
                    (name, owner, iso_str(expires_at)),
                )
                self._conn.commit()
                return True
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def release_lease(self, name: str, owner: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM leases WHERE name=? AND owner=?", (name, owner))
            self._commit()

    # --- Row converters ---

    def _rows_to_memories(self, rows: list[sqlite3.Row]) -> list[Memory]:
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        keys: dict[int, list[SemanticKey]] = {i: [] for i in ids}
        marks = ",".join("?" * len(ids))
        for k in self._conn.execute(
            f"SELECT * FROM memory_keys WHERE memory_id IN ({marks}) ORDER BY memory_id, position",
            ids,
        ):
            keys[k["memory_id"]].append(SemanticKey(key=k["key"], value=k["value"]))
        return [
            Memory(
                id=r["id"],
                session_id=r["session_id"],
                tool_name=r["tool_name"],
                content=r["content"],
                raw_hash=r["raw_hash"],
                keys=keys[r["id"]],
                tier=Tier(r["tier"]) if r["tier"] else None,
                created_at=parse_iso(r["created_at"]),
                reinforced_at=parse_iso(r["reinforced_at"]),
                has_vector=bool(r["has_vector"]),
            )
            for r in rows
        ]

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row, members: list[sqlite3.Row]) -> Pattern:
        evidence = [m["memory_id"] for m in members if m["role"] == MemberRole.EVIDENCE.value]
        counters = [m["memory_id"] for m in members if m["role"] == MemberRole.COUNTER.value]
        resolved = [m["memory_id"] for m in members
                    if m["role"] == MemberRole.COUNTER.value and m["resolved"]]
        return Pattern(
            id=row["id"],
            state=PatternState(row["state"]),
            statement=row["statement"],
            claim=PatternClaim.model_validate(json_loads(row["claim"])),
            confidence=row["confidence"],
            evidence_ids=evidence,
            counter_ids=counters,
            resolved_ids=resolved,
            contradiction_count=row["contradiction_count"],
            version=row["version"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
            reinforced_at=parse_iso(row["reinforced_at"]),
            last_evidence_at=parse_iso(row["last_evidence_at"]),
        )

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> RuleRecord:
        return RuleRecord(
            id=row["id"],
            pattern_id=row["pattern_id"],
            version=row["version"],
            confidence=row["confidence"],
            statement=row["statement"],
            scope_globs=json_loads(row["scope"]),
            content_hash=row["content_hash"],
            file_path=row["file_path"],
            file_hash=row["file_hash"],
            status=RuleStatus(row["status"]),
            published_at=parse_iso(row["published_at"]),
        )
