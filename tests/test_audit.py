"""Tests for the decision audit log."""

from __future__ import annotations

import json
from pathlib import Path

from cmdgate.security.audit import AuditLogger, _truncate, rotated_files
from cmdgate.security.engine import Decision


# --- AuditLogger ---


class TestAuditLogger:
    """Tests for the JSONL decision log."""

    def test_log_decision_writes_jsonl(self, tmp_path: Path) -> None:
        log_file = tmp_path / "decisions.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_decision("Bash", Decision.ALLOW, "ok", "ls -la", session_id="s1", cwd="/repo")

        lines = log_file.read_text().strip().split("\n")
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["event"] == "decision"
        assert entry["tool"] == "Bash"
        assert entry["decision"] == "allow"
        assert entry["raw_command_or_path"] == "ls -la"
        assert entry["session_id"] == "s1"
        assert entry["cwd"] == "/repo"
        assert entry["level"] == "info"
        assert "timestamp" in entry

    def test_optional_fields_omitted(self, tmp_path: Path) -> None:
        log_file = tmp_path / "decisions.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_decision("Read", "deny", "no", None)

        entry = json.loads(log_file.read_text().strip())
        assert entry["raw_command_or_path"] == ""
        assert "session_id" not in entry
        assert "cwd" not in entry

    def test_log_error(self, tmp_path: Path) -> None:
        log_file = tmp_path / "decisions.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_error(None, "something broke", session_id="s1")

        entry = json.loads(log_file.read_text().strip())
        assert entry["event"] == "decision_error"
        assert entry["error"] == "something broke"
        assert entry["tool"] == ""
        assert entry["level"] == "error"

    def test_appends(self, tmp_path: Path) -> None:
        log_file = tmp_path / "decisions.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_decision("Bash", "allow", "", "ls")
        with AuditLogger(str(log_file)) as audit:
            audit.log_decision("Bash", "deny", "", "rm")

        assert len(log_file.read_text().strip().split("\n")) == 2

    def test_context_manager_closes_file(self, tmp_path: Path) -> None:
        audit = AuditLogger(str(tmp_path / "decisions.jsonl"))
        assert not audit._file.closed
        audit.__exit__(None, None, None)
        assert audit._file.closed

    def test_creates_parent_dirs(self, tmp_path: Path) -> None:
        log_file = tmp_path / "subdir" / "deep" / "decisions.jsonl"
        with AuditLogger(str(log_file)) as audit:
            audit.log_decision("Bash", "allow", "", "ls")
        assert log_file.exists()
        assert audit.path == log_file


# --- rotation ---


class TestRotation:
    """Tests for size-based rotation."""

    def test_rotates_when_full(self, tmp_path: Path) -> None:
        log_file = tmp_path / "decisions.jsonl"
        log_file.write_text("x" * 50)
        with AuditLogger(str(log_file), max_bytes=10) as audit:
            audit.log_decision("Bash", "allow", "", "ls")

        backups = rotated_files(log_file)
        assert len(backups) == 1
        assert backups[0].read_text() == "x" * 50
        assert json.loads(log_file.read_text())["tool"] == "Bash"

    def test_small_file_not_rotated(self, tmp_path: Path) -> None:
        log_file = tmp_path / "decisions.jsonl"
        log_file.write_text("x")
        AuditLogger(str(log_file), max_bytes=10).close()
        assert rotated_files(log_file) == []

    def test_prunes_old_backups(self, tmp_path: Path) -> None:
        log_file = tmp_path / "decisions.jsonl"
        for stamp in ("2020-01-01T00-00-00", "2021-01-01T00-00-00", "2022-01-01T00-00-00"):
            (tmp_path / f"decisions.jsonl.{stamp}").write_text("old")
        log_file.write_text("x" * 50)

        AuditLogger(str(log_file), max_bytes=10, backups=2).close()

        names = [p.name for p in rotated_files(log_file)]
        assert len(names) == 2
        assert "decisions.jsonl.2022-01-01T00-00-00" in names
        assert "decisions.jsonl.2020-01-01T00-00-00" not in names


# --- _truncate ---


class TestTruncate:
    """Tests for value truncation."""

    def test_short_unchanged(self) -> None:
        assert _truncate("hello") == "hello"

    def test_long_truncated(self) -> None:
        result = _truncate("x" * 3000)
        assert len(result) < 3000
        assert "3000 total" in result

    def test_custom_max_len(self) -> None:
        assert "truncated" in _truncate("x" * 100, max_len=50)
