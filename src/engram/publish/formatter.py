"""Markdown rendering for rule artifacts."""

from __future__ import annotations

import posixpath
import re

from engram.types import RuleArtifact
from engram.utils import json_dumps, short_hash, slugify

_METADATA_RE = re.compile(
    r"<!-- engram:pattern:(?P<pattern>\d+):v(?P<version>\d+):(?P<date>[\d-]+):"
    r"confidence:(?P<confidence>[\d.]+) -->"
)


def scope_globs(file_paths: list[str]) -> list[str]:
    """``**/*.ext`` and ``<first dir>/**`` for every file path, sorted."""
    globs: set[str] = set()
    for path in file_paths:
        if not path:
            continue
        ext = posixpath.splitext(path)[1].lstrip(".")
        if ext and re.fullmatch(r"[A-Za-z0-9]+", ext):
            globs.add(f"**/*.{ext}")
        head = path.lstrip("/").split("/", 1)
        if len(head) == 2 and head[0]:
            prefix = "/" if path.startswith("/") else ""
            globs.add(f"{prefix}{head[0]}/**")
    return sorted(globs)


def rule_hash(statement: str, globs: list[str]) -> str:
    """Stable over statement and scope only, so re-renders with new dates match."""
    return short_hash(json_dumps({"statement": statement, "scope": sorted(globs)}))


def rule_filename(title: str, pattern_id: int) -> str:
    slug = slugify(title) or "rule"
    return f"{slug}-p{pattern_id}.md"


def metadata_comment(artifact: RuleArtifact) -> str:
    return (
        f"<!-- engram:pattern:{artifact.pattern_id}:v{artifact.version}:"
        f"{artifact.published_at.date().isoformat()}:confidence:{artifact.confidence:.2f} -->"
    )


def parse_metadata(text: str) -> dict | None:
    match = _METADATA_RE.search(text)
    if not match:
        return None
    return {
        "pattern_id": int(match["pattern"]),
        "version": int(match["version"]),
        "date": match["date"],
        "confidence": float(match["confidence"]),
    }


def render(artifact: RuleArtifact) -> str:
    lines: list[str] = []
    if artifact.scope_globs:
        lines.append("---")
        lines.append("paths:")
        lines.extend(f'  - "{g}"' for g in artifact.scope_globs)
        lines.append("---")
        lines.append("")

    lines += [f"# {artifact.title}", "", artifact.statement, ""]

    for heading, items, fmt in (
        ("When This Applies", artifact.when_to_apply, "- {}"),
        ("Examples", artifact.examples, "- {}"),
        ("Related Tools", artifact.related_tools, "- `{}`"),
    ):
        if items:
            lines += [f"## {heading}", ""]
            lines.extend(fmt.format(item) for item in items)
            lines.append("")

    if artifact.session_count > 1:
        lines += [f"*This pattern was confirmed across {artifact.session_count} sessions.*", ""]

    lines.append(metadata_comment(artifact))
    lines.append("")
    return "\n".join(lines)
