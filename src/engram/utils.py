"""Shared utilities."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

import orjson

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def content_hash(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def short_hash(data: bytes | str, length: int = 16) -> str:
    return content_hash(data)[:length]


def iso_str(dt: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as text.
    return ensure_utc(dt).isoformat(timespec="microseconds")


def parse_iso(s: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(s))


def truncate(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + "..."


def slugify(text: str, max_len: int = 50) -> str:
    return _SLUG_RE.sub("-", (text or "").lower()).strip("-")[:max_len].strip("-")


def jaccard(a: set, b: set) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)
