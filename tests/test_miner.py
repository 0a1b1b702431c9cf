"""Tests for the rule miner."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from cmdgate.miner import (
    DecisionRecord,
    Recommendation,
    RiskLevel,
    analyze,
    assess_risk,
    combine_risk,
    command_candidate,
    extract_candidate,
    generalize_command,
    generalize_path,
    load_records,
    log_files,
    mine,
    write_proposals,
)

CWD = "/repo"
HOME = "/home/u"
START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record(
    raw: str,
    decision: str = "allow",
    tool: str = "Bash",
    minutes: int = 0,
    session_id: str | None = "s1",
) -> DecisionRecord:
    return DecisionRecord(
        timestamp=START + timedelta(minutes=minutes),
        tool=tool,
        decision=decision,
        raw_command_or_path=raw,
        session_id=session_id,
        cwd=CWD,
    )


def _line(raw: str, decision: str = "allow", when: str = "2024-05-01T12:00:00Z", **extra) -> str:
    entry = {
        "event": "decision",
        "tool": "Bash",
        "decision": decision,
        "reason": "",
        "raw_command_or_path": raw,
        "timestamp": when,
        **extra,
    }
    return json.dumps(entry)


def _by_pattern(records: list[DecisionRecord], **kwargs):
    report = analyze(records, cwd=CWD, home=HOME, **kwargs)
    return {a.pattern: a for a in report.analyses}, report


# --- generalization ---


class TestGeneralizeCommand:
    """Tests for turning commands into Bash rule payloads."""

    @pytest.mark.parametrize(
        ("command", "expected"),
        [
            ("git status", "git status"),
            ("git status --short", "git status:*"),
            ("git diff --name-only", "git diff:*"),
            ("npm run build", "npm run:*"),
            ("npm", "npm:*"),
            ("npx prettier@3 --write .", "npx prettier:*"),
            ("npx @scope/pkg@1.2.0 init", "npx @scope/pkg:*"),
            ("pnpm dlx create-app", "npx create-app:*"),
            ("find . -delete", "find -delete:*"),
            ("find . -exec rm {} ;", "find -exec rm:*"),
            ("find . -name x", "find:*"),
            ("ls -la", "ls:*"),
        ],
    )
    def test_generalize(self, command: str, expected: str) -> None:
        assert generalize_command(command) == expected


class TestGeneralizePath:
    """Tests for turning file paths into path-rule payloads."""

    def test_inside_cwd(self) -> None:
        path = "/repo/src/components/Button.tsx"
        assert generalize_path(path, cwd=CWD, home=HOME) == "./src/**"

    def test_shallow_path_kept(self) -> None:
        assert generalize_path("/repo/README.md", cwd=CWD, home=HOME) == "./README.md"

    def test_home(self) -> None:
        assert generalize_path("/home/u/.ssh/id_rsa", cwd=CWD, home=HOME) == "~/.ssh/**"

    def test_cwd_inside_home(self) -> None:
        path = "/home/u/repo/src/a/b.ts"
        assert generalize_path(path, cwd="/home/u/repo", home=HOME) == "./src/**"

    def test_special_directories(self) -> None:
        assert generalize_path("/repo/node_modules/x/y.js", cwd=CWD, home=HOME) == "node_modules/**"
        assert generalize_path("/repo/.git/config", cwd=CWD, home=HOME) == ".git/**"
        assert generalize_path("src/a.test.ts", cwd=CWD, home=HOME) == "**/*.test.*"


class TestCandidates:
    """Tests for candidate extraction from records."""

    def test_simple_command(self) -> None:
        assert command_candidate("git diff HEAD~1", cwd=CWD) == "Bash(git diff:*)"

    def test_first_command_of_line(self) -> None:
        assert command_candidate("npm test && npm run lint", cwd=CWD) == "Bash(npm test:*)"

    def test_keyword_first(self) -> None:
        assert command_candidate("for f in *; do echo $f; done", cwd=CWD) == "Bash(for)"

    def test_safe_shell_invocation(self) -> None:
        assert command_candidate("bash -c 'ls -la | grep x'", cwd=CWD) == "Bash(ls:*)"

    def test_unsafe_shell_invocation(self) -> None:
        assert command_candidate("sh -c 'rm x'", cwd=CWD) == "Bash(sh -c:*)"

    def test_shell_redirect_outside_workspace(self) -> None:
        assert command_candidate("sh -c 'echo hi > /etc/x'", cwd=CWD) == "Bash(sh -c:*)"

    def test_shell_redirect_to_dev_null(self) -> None:
        assert command_candidate("sh -c 'echo hi > /dev/null'", cwd=CWD) == "Bash(echo:*)"

    def test_file_tool(self) -> None:
        record = _record("/repo/src/app/main.ts", tool="Edit")
        assert extract_candidate(record, home=HOME) == "Edit(./src/**)"

    def test_search_tool(self) -> None:
        assert extract_candidate(_record("src", tool="Grep"), home=HOME) == "Grep"

    def test_mcp_tool(self) -> None:
        assert extract_candidate(_record("", tool="mcp__github__create_issue"), home=HOME) is None

    def test_bash_without_command(self) -> None:
        assert extract_candidate(_record(""), home=HOME) is None


# --- risk ---


class TestRisk:
    """Tests for risk assessment."""

    def test_read_in_project(self) -> None:
        assert assess_risk("Read(src/**)", cwd=CWD, home=HOME) is RiskLevel.LOW

    def test_write_system(self) -> None:
        assert assess_risk("Write(/etc/**)", cwd=CWD, home=HOME) is RiskLevel.CRITICAL

    def test_secret_target(self) -> None:
        assert assess_risk("Read(~/.ssh/**)", cwd=CWD, home=HOME) is RiskLevel.CRITICAL

    def test_env_edit(self) -> None:
        assert assess_risk("Edit(.env)", cwd=CWD, home=HOME) is RiskLevel.HIGH

    def test_bash(self) -> None:
        assert assess_risk("Bash(git diff:*)") is RiskLevel.LOW
        assert assess_risk("Bash(make:*)") is RiskLevel.MEDIUM
        assert assess_risk("Bash(rm -rf:*)") is RiskLevel.CRITICAL
        assert assess_risk("Bash(curl:*)") is RiskLevel.HIGH

    def test_tool_without_payload(self) -> None:
        assert assess_risk("TodoWrite") is RiskLevel.MEDIUM

    @pytest.mark.parametrize(
        ("levels", "expected"),
        [
            ([RiskLevel.MINIMAL, RiskLevel.MINIMAL], RiskLevel.MINIMAL),
            ([RiskLevel.MINIMAL, RiskLevel.LOW], RiskLevel.LOW),
            ([RiskLevel.MEDIUM, RiskLevel.LOW], RiskLevel.MEDIUM),
            ([RiskLevel.MEDIUM, RiskLevel.MEDIUM], RiskLevel.HIGH),
            ([RiskLevel.HIGH, RiskLevel.HIGH], RiskLevel.CRITICAL),
            ([RiskLevel.CRITICAL, RiskLevel.MINIMAL], RiskLevel.CRITICAL),
        ],
    )
    def test_combine(self, levels: list[RiskLevel], expected: RiskLevel) -> None:
        assert combine_risk(levels) is expected


# --- analysis ---


class TestAnalyze:
    """Tests for grouping and recommendations."""

    def test_allow_candidate(self) -> None:
        records = [_record("git diff", minutes=i) for i in range(4)]
        analyses, report = _by_pattern(records)
        analysis = analyses["Bash(git diff:*)"]
        assert analysis.recommendation is Recommendation.ADD_TO_ALLOW
        assert analysis.risk is RiskLevel.LOW
        assert analysis.confidence == 0.4
        assert analysis.first_seen == START
        assert analysis.last_seen == START + timedelta(minutes=3)
        assert report.allow_candidates == [analysis]

    def test_deny_candidate(self) -> None:
        records = [_record("rm -rf /", decision="deny") for _ in range(3)]
        analyses, report = _by_pattern(records)
        assert analyses["Bash(rm:*)"].recommendation is Recommendation.ADD_TO_DENY
        assert len(report.deny_candidates) == 1

    def test_shell_needs_pattern(self) -> None:
        records = [_record("sh -c 'rm x'", decision="pass") for _ in range(2)]
        analyses, report = _by_pattern(records)
        assert analyses["Bash(sh -c:*)"].recommendation is Recommendation.NEEDS_PATTERN
        assert len(report.pattern_candidates) == 1

    def test_control_keyword(self) -> None:
        records = [_record("for f in *; do echo $f; done", decision="pass") for _ in range(2)]
        analyses, _ = _by_pattern(records)
        assert analyses["Bash(for)"].recommendation is Recommendation.ADD_TO_ALLOW

    def test_critical_allow_downgraded(self) -> None:
        records = [_record("/home/u/.ssh/id_rsa", tool="Read") for _ in range(3)]
        analyses, _ = _by_pattern(records)
        analysis = analyses["Read(~/.ssh/**)"]
        assert analysis.risk is RiskLevel.CRITICAL
        assert analysis.recommendation is Recommendation.KEEP_AS_IS
        assert analysis.reasoning.endswith("but the pattern is critical risk")

    def test_insufficient_data(self) -> None:
        records = [_record("make", "allow"), _record("make", "ask")]
        analyses, _ = _by_pattern(records)
        assert analyses["Bash(make:*)"].reasoning == "Insufficient data (2 occurrences)"

    def test_mixed_results(self) -> None:
        records = [_record("make", d) for d in ("allow", "allow", "deny", "ask")]
        analyses, report = _by_pattern(records)
        analysis = analyses["Bash(make:*)"]
        assert analysis.recommendation is Recommendation.KEEP_AS_IS
        assert analysis.reasoning.startswith("Mixed results (2 allows, 1 denies, 1 asks)")
        assert report.review_candidates == [analysis]

    def test_min_frequency(self) -> None:
        records = [_record("git diff"), _record("git log")]
        analyses, report = _by_pattern(records, min_frequency=2)
        assert analyses == {}
        assert report.total_analyzed == 2

    def test_sorted_by_frequency(self) -> None:
        records = [_record("make")] * 2 + [_record("git diff")] * 3
        _, report = _by_pattern(records)
        assert [a.pattern for a in report.analyses] == ["Bash(git diff:*)", "Bash(make:*)"]

    def test_examples(self) -> None:
        records = [_record(f"git diff {i}") for i in range(5)]
        analyses, _ = _by_pattern(records)
        assert analyses["Bash(git diff:*)"].examples == ["git diff 0", "git diff 1", "git diff 2"]


# --- reading the log ---


class TestDecisionRecord:
    """Tests for parsing log entries."""

    def test_legacy_command(self) -> None:
        record = DecisionRecord.model_validate({"tool_name": "Bash", "decision": "allow", "command": "ls"})
        assert record.tool == "Bash"
        assert record.raw_command_or_path == "ls"

    def test_legacy_input(self) -> None:
        record = DecisionRecord.model_validate(
            {"tool_name": "Edit", "decision": "ask", "input": {"file_path": "src/a.ts"}}
        )
        assert record.raw_command_or_path == "src/a.ts"

    def test_naive_timestamp_is_utc(self) -> None:
        record = DecisionRecord.model_validate(
            {"tool": "Bash", "decision": "allow", "timestamp": "2024-01-01T00:00:00"}
        )
        assert record.when.tzinfo is not None

    def test_test_session(self) -> None:
        assert _record("ls", session_id="test-123").is_test_session
        assert not _record("ls", session_id=None).is_test_session


class TestLoadRecords:
    """Tests for reading the JSONL log and its rotated files."""

    def test_missing_log(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_records(tmp_path / "decisions.jsonl")

    def test_skips_bad_lines(self, tmp_path: Path) -> None:
        log = tmp_path / "decisions.jsonl"
        lines = [
            _line("ls"),
            "not json",
            "",
            json.dumps({"event": "decision_error", "tool": "Bash", "error": "boom"}),
            _line("pwd", when="2024-05-01T12:01:00Z"),
        ]
        log.write_text("\n".join(lines) + "\n")
        records = load_records(log)
        assert [r.raw_command_or_path for r in records] == ["ls", "pwd"]

    def test_test_sessions(self, tmp_path: Path) -> None:
        log = tmp_path / "decisions.jsonl"
        log.write_text(_line("ls", session_id="test-abc") + "\n" + _line("pwd", session_id="real") + "\n")
        assert [r.raw_command_or_path for r in load_records(log)] == ["pwd"]
        assert len(load_records(log, include_test=True)) == 2

    def test_rotated_files_and_order(self, tmp_path: Path) -> None:
        log = tmp_path / "decisions.jsonl"
        rotated = tmp_path / "decisions.jsonl.2024-04-30T00-00-00"
        rotated.write_text(_line("old", when="2024-04-29T10:00:00Z") + "\n")
        log.write_text(_line("new", when="2024-05-01T10:00:00Z") + "\n")
        (tmp_path / "decisions.jsonl.tmp").write_text(_line("ignored") + "\n")

        assert log_files(log) == [rotated, log]
        records = load_records(log)
        assert [r.raw_command_or_path for r in records] == ["old", "new"]

    def test_max_entries_keeps_newest(self, tmp_path: Path) -> None:
        log = tmp_path / "decisions.jsonl"
        log.write_text(
            "\n".join(_line(f"cmd{i}", when=f"2024-05-01T12:0{i}:00Z") for i in range(5)) + "\n"
        )
        records = load_records(log, max_entries=2)
        assert [r.raw_command_or_path for r in records] == ["cmd3", "cmd4"]

    def test_since(self, tmp_path: Path) -> None:
        log = tmp_path / "decisions.jsonl"
        log.write_text(
            _line("old", when="2024-01-01T00:00:00Z") + "\n" + _line("new", when="2024-06-01T00:00:00Z") + "\n"
        )
        records = load_records(log, since=datetime(2024, 3, 1))
        assert [r.raw_command_or_path for r in records] == ["new"]


# --- proposals ---


class TestProposals:
    """Tests for mining end to end and writing proposals."""

    def test_mine_and_write(self, tmp_path: Path) -> None:
        log = tmp_path / "decisions.jsonl"
        lines = [_line("git diff") for _ in range(4)] + [_line("rm -rf /", decision="deny") for _ in range(3)]
        log.write_text("\n".join(lines) + "\n")

        report = mine(log)
        assert report.total_analyzed == 7

        out = write_proposals(report, tmp_path / "out" / "proposals.yaml")
        assert out.exists()
        assert not out.with_suffix(".yaml.tmp").exists()

        document = yaml.safe_load(out.read_text())
        assert document["total_analyzed"] == 7
        assert document["proposed"]["allow"] == ["Bash(git diff:*)"]
        assert document["proposed"]["deny"] == ["Bash(rm:*)"]
        assert document["allow_candidates"][0]["recommendation"] == "add_to_allow"
        assert document["deny_candidates"][0]["decisions"]["deny"] == 3
