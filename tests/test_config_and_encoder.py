from __future__ import annotations

from datetime import datetime, timezone

import pytest

from engram.capture.encoder import action_of, context_of, derive_keys, encode, parse_event
from engram.config import Config
from engram.exceptions import CaptureError, ConfigError


def test_config_env_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("ENGRAM_DATA_DIR", str(tmp_path / "d"))
    monkeypatch.setenv("ENGRAM_RULES_MIN_CONFIDENCE", "0.9")
    monkeypatch.setenv("ENGRAM_RULES_MIN_MEMORIES", "5")
    monkeypatch.setenv("ENGRAM_RULES_AUTO_PUBLISH", "false")
    cfg = Config.load()
    assert cfg.data_dir == tmp_path / "d"
    assert cfg.publish.min_confidence == 0.9
    assert cfg.publish.auto_publish is False
    assert cfg.dialectic.min_evidence == 5
    assert cfg.db_path == tmp_path / "d" / "db" / "engram.db"


def test_config_defaults_match_documented_thresholds(monkeypatch):
    for name in ("ENGRAM_RULES_MIN_CONFIDENCE", "ENGRAM_RULES_MIN_MEMORIES",
                 "ENGRAM_RULES_AUTO_PUBLISH"):
        monkeypatch.delenv(name, raising=False)
    cfg = Config.load()
    assert cfg.index.min_similarity == 0.82
    assert cfg.detector.attach_threshold == 0.75
    assert cfg.detector.cluster_threshold == 0.5
    assert cfg.detector.sequence_window_seconds == 120
    assert cfg.dialectic.min_evidence == 3
    assert cfg.publish.min_confidence == 0.7
    assert cfg.lifecycle.session_decay == 0.85
    assert cfg.lifecycle.retire_floor == 0.2
    assert cfg.lifecycle.retire_after_sessions == 10
    assert cfg.ingest.debounce_seconds == 5


def test_invalid_config_raises_config_error():
    with pytest.raises(ConfigError):
        Config.load(detector={"attach_threshold": 2.0})


def test_parse_event_accepts_hook_field_names():
    event = parse_event(
        '{"sessionId": "s1", "toolName": "Bash", "tool_input": {"command": "ls"},'
        ' "timestamp": "2026-01-02T03:04:05"}'
    )
    assert event.session_id == "s1"
    assert event.input == {"command": "ls"}
    assert event.timestamp == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.mark.parametrize("payload", ["not json", "[1, 2]", {"tool_name": "Bash"}, {"session_id": "", "tool_name": "Bash"}])
def test_parse_event_rejects_malformed(payload):
    with pytest.raises(CaptureError):
        parse_event(payload)


def test_derive_keys_for_bash_and_file_tools():
    bash = parse_event({"session_id": "s", "tool_name": "Bash",
                        "input": {"command": "git commit -m x"}, "error": "exit 1"})
    assert [(k.key, k.value) for k in derive_keys(bash)] == [
        ("command", "git"), ("subcommand", "commit"), ("outcome", "failure"),
    ]

    edit = parse_event({"session_id": "s", "tool_name": "Edit",
                        "input": {"file_path": "src/app/main.py"}, "keys": {"area": "api"}})
    keys = {k.key: k.value for k in derive_keys(edit)}
    assert keys == {
        "file_path": "src/app/main.py",
        "file_extension": "py",
        "directory": "src/app",
        "area": "api",
    }
    assert action_of("Edit", keys) == "Edit *.py"
    assert context_of("Edit", keys) == {
        "tool": "Edit", "file_extension": "py", "directory": "src/app", "area": "api",
    }


def test_encode_truncates_input_and_output():
    event = parse_event({"session_id": "s", "tool_name": "Bash",
                         "input": {"command": "echo " + "x" * 900}, "output": "y" * 500})
    memory = encode(event, max_input=500, max_output=200)
    lines = memory.content.splitlines()
    assert lines[0] == "Tool: Bash"
    assert len(lines[1]) == len("Input: ") + 500 + 3
    assert lines[2] == "Output: " + "y" * 200 + "..."
    assert len(memory.raw_hash) == 64
