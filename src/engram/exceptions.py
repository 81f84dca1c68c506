"""Exception hierarchy for engram.

Errors raised at the capture boundary reject input, errors raised at startup
abort the process, and everything else is logged and degrades the pipeline.
"""

from __future__ import annotations

from typing import Any


class EngramError(Exception):
    """Base exception for all engram errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# --- Capture ---

class CaptureError(EngramError):
    """Malformed capture event. Rejected at the boundary, never stored."""


class DuplicateKind(EngramError):
    """Same session and raw content appended again inside the debounce window."""

    def __init__(self, session_id: str, raw_hash: str, existing_id: int) -> None:
        self.session_id = session_id
        self.raw_hash = raw_hash
        self.existing_id = existing_id
        super().__init__(
            "duplicate memory inside debounce window",
            {"session_id": session_id, "existing_id": existing_id},
        )


class EmbeddingUnavailable(EngramError):
    """Embedding backend failed. The memory is kept without a vector."""


# --- Storage ---

class StorageError(EngramError):
    """Generic storage failure."""


class StoreCorruption(StorageError):
    """The durable store failed its integrity check. Fatal at startup."""


class ConfigError(EngramError):
    """Invalid configuration. Fatal at startup."""


# --- Pattern state ---

class InvalidTransition(EngramError):
    """A tier or state change the lifecycle does not allow."""


class InsufficientEvidence(EngramError):
    """A pattern lacks the evidence or confidence to progress.

    Not a failure: callers catch it and leave the pattern where it is.
    """

    def __init__(self, pattern_id: int | None, evidence: int, required: int,
                 confidence: float | None = None) -> None:
        self.pattern_id = pattern_id
        self.evidence = evidence
        self.required = required
        self.confidence = confidence
        super().__init__(
            "insufficient evidence",
            {"pattern_id": pattern_id, "evidence": evidence, "required": required},
        )


# --- Publishing ---

class PublishError(EngramError):
    """The rule writer could not write the artifact."""


class PublishConflict(PublishError):
    """The rule artifact on disk was modified outside engram."""

    def __init__(self, pattern_id: int, path: str) -> None:
        self.pattern_id = pattern_id
        self.path = path
        super().__init__(
            "rule artifact modified externally",
            {"pattern_id": pattern_id, "path": path},
        )
