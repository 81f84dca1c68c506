"""Turns raw capture events into memories with semantic keys."""

from __future__ import annotations

import posixpath
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from engram.exceptions import CaptureError
from engram.types import CaptureEvent, Memory, SemanticKey, Tier
from engram.utils import content_hash, json_dumps, json_loads, truncate

FILE_TOOLS = {"Read", "Write", "Edit", "MultiEdit", "NotebookEdit"}
SEARCH_TOOLS = {"Grep", "Glob"}
WEB_TOOLS = {"WebFetch", "WebSearch"}

# Keys that identify one specific occurrence rather than a context.
OCCURRENCE_KEYS = frozenset({"file_path", "url", "search_pattern", "outcome", "query"})


def parse_event(payload: dict[str, Any] | str | bytes) -> CaptureEvent:
    """Validate a hook payload. Accepts the hook's camelCase field names too."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json_loads(payload)
        except ValueError as exc:
            raise CaptureError("capture payload is not valid JSON", {"error": str(exc)}) from exc
    if not isinstance(payload, dict):
        raise CaptureError("capture payload must be an object")
    data = dict(payload)
    for src, dst in (("sessionId", "session_id"), ("toolName", "tool_name"),
                     ("tool_input", "input"), ("toolInput", "input"),
                     ("tool_response", "output"), ("toolOutput", "output")):
        if src in data and dst not in data:
            data[dst] = data.pop(src)
    try:
        return CaptureEvent.model_validate(data)
    except ValidationError as exc:
        raise CaptureError("malformed capture event", {"errors": exc.errors(include_url=False)}) from exc


def _as_input(raw: dict[str, Any] | str) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    text = raw.strip()
    if text.startswith("{"):
        try:
            parsed = json_loads(text)
            if isinstance(parsed, dict):
                return parsed
        except ValueError:
            pass
    return {"value": raw}


def derive_keys(event: CaptureEvent) -> list[SemanticKey]:
    data = _as_input(event.input)
    tool = event.tool_name
    keys: list[tuple[str, str]] = []

    command = str(data.get("command") or "").strip()
    if tool == "Bash" and command:
        words = command.split()
        keys.append(("command", words[0]))
        if len(words) > 1 and not words[1].startswith("-"):
            keys.append(("subcommand", words[1]))

    file_path = str(data.get("file_path") or data.get("notebook_path") or data.get("path") or "")
    if file_path and (tool in FILE_TOOLS or tool in SEARCH_TOOLS):
        keys.append(("file_path", file_path))
        ext = posixpath.splitext(file_path)[1].lstrip(".").lower()
        if ext:
            keys.append(("file_extension", ext))
        directory = posixpath.dirname(file_path)
        if directory:
            keys.append(("directory", directory))

    pattern = str(data.get("pattern") or "")
    if pattern and tool in SEARCH_TOOLS:
        keys.append(("search_pattern", pattern))

    url = str(data.get("url") or "")
    if url and tool in WEB_TOOLS:
        keys.append(("url", url))
        domain = urlparse(url).netloc
        if domain:
            keys.append(("domain", domain))
    if tool == "WebSearch" and data.get("query"):
        keys.append(("query", str(data["query"])))

    if event.error:
        keys.append(("outcome", "failure"))

    seen = {k for k, _ in keys}
    for key in sorted(event.keys):
        if key not in seen:
            keys.append((key, str(event.keys[key])))
    return [SemanticKey(key=k, value=v) for k, v in keys]


def render_content(event: CaptureEvent, max_input: int = 500, max_output: int = 200) -> str:
    raw_input = event.input if isinstance(event.input, str) else json_dumps(event.input)
    output = event.output if isinstance(event.output, str) else json_dumps(event.output)
    parts = [f"Tool: {event.tool_name}", f"Input: {truncate(raw_input, max_input)}"]
    if output:
        parts.append(f"Output: {truncate(output, max_output)}")
    if event.error:
        parts.append(f"Error: {truncate(event.error, max_output)}")
    return "\n".join(parts)


def encode(event: CaptureEvent, max_input: int = 500, max_output: int = 200) -> Memory:
    content = render_content(event, max_input, max_output)
    return Memory(
        session_id=event.session_id,
        tool_name=event.tool_name,
        content=content,
        raw_hash=content_hash(content),
        keys=derive_keys(event),
        tier=Tier.WORKING,
        created_at=event.timestamp,
        reinforced_at=event.timestamp,
    )


def action_of(tool_name: str, keys: dict[str, str]) -> str:
    """Short label for what a memory did, e.g. ``git commit`` or ``Edit *.py``."""
    if keys.get("command"):
        sub = keys.get("subcommand")
        return f"{keys['command']} {sub}" if sub else keys["command"]
    if keys.get("file_extension"):
        return f"{tool_name} *.{keys['file_extension']}"
    if keys.get("domain"):
        return f"{tool_name} {keys['domain']}"
    return tool_name


def context_of(tool_name: str, keys: dict[str, str]) -> dict[str, str]:
    ctx = {"tool": tool_name}
    ctx.update({k: v for k, v in keys.items() if k not in OCCURRENCE_KEYS})
    return ctx
