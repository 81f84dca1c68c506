"""Capture boundary: hook payloads in, memories out."""

from engram.capture.encoder import action_of, context_of, derive_keys, encode, parse_event

__all__ = ["action_of", "context_of", "derive_keys", "encode", "parse_event"]
