from __future__ import annotations

import pytest
from click.testing import CliRunner

from engram.cli import main
from engram.utils import json_dumps


@pytest.fixture
def run(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENGRAM_EMBED_PROVIDER", "hash")
    monkeypatch.setenv("ENGRAM_SUMMARIZER", "template")
    runner = CliRunner()
    data_dir = str(tmp_path / "data")

    def _run(*args, input=None):
        return runner.invoke(main, ["--data-dir", data_dir, *args], input=input)

    return _run


EVENT = json_dumps({
    "session_id": "s1",
    "tool_name": "Bash",
    "tool_input": {"command": "git status"},
    "timestamp": "2026-02-01T10:00:00+00:00",
})


def test_capture_from_stdin_and_status(run):
    result = run("capture", input=EVENT)
    assert result.exit_code == 0, result.output
    assert "captured memory 1" in result.output

    again = run("capture", input=EVENT)
    assert again.exit_code == 0
    assert "duplicate of memory 1, skipped" in again.output

    status = run("status")
    assert status.exit_code == 0
    assert "Memories:   1" in status.output
    # Capture does not wait on the embedder; the cycle backfills.
    assert "Vectors:    0 (index 0)" in status.output

    assert run("consolidate").exit_code == 0
    assert "Vectors:    1 (index 1)" in run("status").output


def test_capture_rejects_malformed_event(run):
    result = run("capture", input="{not json")
    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_capture_from_file(run, tmp_path):
    event_file = tmp_path / "event.json"
    event_file.write_text(EVENT)
    result = run("capture", "--input", str(event_file))
    assert result.exit_code == 0
    find = run("find", "git")
    assert find.exit_code == 0
    assert "memory 1" in find.output


def test_sessions_patterns_and_rules(run):
    assert "session s1 started" in run("session-start", "s1").output
    ended = run("session-end", "s1")
    assert ended.exit_code == 0
    assert "session s1 ended" in ended.output
    assert "attached 0, seeded 0" in ended.output
    assert "unknown session nope" in run("session-end", "nope", "--no-consolidate").output

    assert "No patterns." in run("patterns").output
    missing = run("pattern", "5")
    assert missing.exit_code == 1
    assert "unknown pattern 5" in missing.output
    assert "No rules." in run("rules").output
    assert "Nothing to publish." in run("publish").output
    assert "no-op (not_found)" in run("publish", "3").output


def test_rebuild_index_and_reset(run, tmp_path):
    run("capture", input=EVENT)
    run("consolidate")
    rebuilt = run("rebuild-index")
    assert rebuilt.exit_code == 0
    assert "index rebuilt: 1 vectors" in rebuilt.output

    reset = run("reset", "--yes")
    assert reset.exit_code == 0
    assert not (tmp_path / "data" / "db").exists()
    assert "Memories:   0" in run("status").output
