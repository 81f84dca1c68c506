"""Rule writers. The markdown file writer is the shipped implementation."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from engram.utils import content_hash


@runtime_checkable
class RuleWriter(Protocol):
    def write(self, filename: str, content: str, previous: str | None = None) -> tuple[str, str]:
        """Write the artifact, returning ``(path, sha256 of the written bytes)``."""
        ...

    def remove(self, path: str) -> None: ...

    def current_hash(self, path: str) -> str | None: ...


class FileRuleWriter:
    """Writes one markdown file per pattern into ``rules_dir`` via temp file and rename."""

    def __init__(self, rules_dir: Path | str) -> None:
        self.rules_dir = Path(rules_dir)

    def write(self, filename: str, content: str, previous: str | None = None) -> tuple[str, str]:
        self.rules_dir.mkdir(parents=True, exist_ok=True)
        target = self.rules_dir / filename
        fd, tmp_path = tempfile.mkstemp(dir=self.rules_dir, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        if previous and Path(previous) != target:
            Path(previous).unlink(missing_ok=True)
        return str(target), content_hash(content)

    def remove(self, path: str) -> None:
        Path(path).unlink(missing_ok=True)

    def current_hash(self, path: str) -> str | None:
        p = Path(path)
        if not p.is_file():
            return None
        return content_hash(p.read_bytes())
