"""Rule miner: propose allow/deny rules from the decision log.

Replays historical decisions from the JSONL audit log (and its rotated
siblings), turns each one into a generalized candidate rule, groups the
candidates and recommends what to do with each group. Results go to a
separate proposals YAML file for a human to review; live settings are
never modified.

The decision statistics are the hook's own automatic verdicts. What the
user eventually chose for an ``ask``, or what the agent did with a
``pass``, is not recorded.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from cmdgate.security.audit import ROTATED_SUFFIX_FORMAT
from cmdgate.shell import SimpleCommand, decompose
from cmdgate.tools import BASH_TOOL, SEARCH_TOOLS

logger = structlog.get_logger()

DEFAULT_LOG_PATH = "~/.claude/logs/decisions.jsonl"

_ROTATED_RE = re.compile(r"\.\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}$")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class RiskLevel(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Recommendation(str, Enum):
    ADD_TO_ALLOW = "add_to_allow"
    ADD_TO_DENY = "add_to_deny"
    NEEDS_PATTERN = "needs_pattern"
    KEEP_AS_IS = "keep_as_is"


class DecisionRecord(BaseModel):
    """One decision read back from the log.

    Accepts the audit logger's field names and the older
    ``tool_name``/``command``/``input`` layout.
    """

    model_config = ConfigDict(extra="ignore")

    timestamp: datetime | None = None
    tool: str
    decision: str
    reason: str = ""
    raw_command_or_path: str = ""
    session_id: str | None = None
    cwd: str | None = None

    @model_validator(mode="before")
    @classmethod
    def legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "tool" not in data and "tool_name" in data:
            data["tool"] = data["tool_name"]
        if not data.get("raw_command_or_path"):
            legacy_input = data.get("input")
            if data.get("command"):
                data["raw_command_or_path"] = data["command"]
            elif isinstance(legacy_input, dict) and isinstance(legacy_input.get("file_path"), str):
                data["raw_command_or_path"] = legacy_input["file_path"]
        return data

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def when(self) -> datetime:
        return self.timestamp or _EPOCH

    @property
    def is_test_session(self) -> bool:
        return bool(self.session_id) and "test" in self.session_id


# ---------------------------------------------------------------------------
# Reading the log
# ---------------------------------------------------------------------------


def log_files(log_path: str | Path) -> list[Path]:
    """The main log plus its timestamp-rotated siblings, oldest first."""
    path = Path(log_path).expanduser()
    files: list[Path] = []
    if path.parent.is_dir():
        for candidate in path.parent.glob(f"{path.name}.*"):
            suffix = candidate.name[len(path.name):]
            if _ROTATED_RE.fullmatch(suffix):
                files.append(candidate)
    files.sort(key=lambda p: _rotation_time(p, path.name))
    if path.exists():
        files.append(path)
    return files


def _rotation_time(path: Path, base_name: str) -> datetime:
    stamp = path.name[len(base_name) + 1:]
    try:
        return datetime.strptime(stamp, ROTATED_SUFFIX_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return _EPOCH


def load_records(
    log_path: str | Path = DEFAULT_LOG_PATH,
    *,
    max_entries: int = 500,
    since: datetime | None = None,
    include_test: bool = False,
) -> list[DecisionRecord]:
    """Read the newest ``max_entries`` decision records, oldest first.

    Lines that are not JSON, or not decision records, are skipped.

    Raises:
        FileNotFoundError: If neither the log nor any rotated file exists.
    """
    files = log_files(log_path)
    if not files:
        raise FileNotFoundError(f"No decision log found at {Path(log_path).expanduser()}")

    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)

    records: list[DecisionRecord] = []
    skipped = 0
    for path in files:
        try:
            with open(path) as f:
                lines = f.readlines()
        except OSError as e:
            logger.warning("decision_log_unreadable", path=str(path), error=str(e))
            continue
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = DecisionRecord.model_validate(json.loads(line))
            except (ValueError, ValidationError):
                skipped += 1
                continue
            if not include_test and record.is_test_session:
                continue
            if since is not None and record.when < since:
                continue
            records.append(record)

    if skipped:
        logger.debug("decision_lines_skipped", count=skipped)
    records.sort(key=lambda r: r.when)
    return records[-max_entries:]


# ---------------------------------------------------------------------------
# Generalization
# ---------------------------------------------------------------------------

_PACKAGE_MANAGERS = frozenset({"npm", "pnpm", "yarn", "bun"})
_PACKAGE_RUNNERS = frozenset({"npx", "pnpx", "bunx"})


def _runner_package(words: list[str], start: int) -> str:
    for word in words[start:]:
        if word and not word.startswith("-"):
            # scoped packages keep their leading @
            if word.startswith("@"):
                return "@" + word[1:].split("@", 1)[0]
            return word.split("@", 1)[0]
    return ""


def generalize_command(command: str) -> str:
    """Turn one concrete command into a ``Bash`` rule payload.

    >>> generalize_command("git diff --name-only")
    'git diff:*'
    """
    words = command.split()
    if not words:
        return command
    cmd = words[0]
    sub = words[1] if len(words) > 1 else None

    if cmd in ("pnpm", "yarn") and sub == "dlx":
        package = _runner_package(words, 2)
        return f"npx {package}:*" if package else "npx:*"
    if cmd in _PACKAGE_MANAGERS:
        return f"{cmd} {sub}:*" if sub else f"{cmd}:*"
    if cmd in _PACKAGE_RUNNERS:
        package = _runner_package(words, 1)
        return f"npx {package}:*" if package else "npx:*"

    if cmd == "git":
        if sub == "status" and len(words) == 2:
            return "git status"
        return f"git {sub}:*" if sub else "git:*"

    if cmd == "find":
        if "-delete" in words:
            return "find -delete:*"
        if "-exec" in words:
            tail = " ".join(words[words.index("-exec") + 1:])
            if re.search(r"\brm\b", tail):
                return "find -exec rm:*"
        return "find:*"

    return f"{cmd}:*"


def generalize_path(path: str, *, cwd: str | None = None, home: str | None = None) -> str:
    """Turn a concrete file path into a path-rule payload."""
    cwd = cwd or os.getcwd()
    home = home or os.path.expanduser("~")

    normalized = path
    if normalized == cwd or normalized.startswith(cwd.rstrip("/") + "/"):
        normalized = "." + normalized[len(cwd.rstrip("/")):]
    elif normalized == home or normalized.startswith(home.rstrip("/") + "/"):
        normalized = "~" + normalized[len(home.rstrip("/")):]

    if "node_modules" in normalized:
        return "node_modules/**"
    if ".git/" in normalized:
        return ".git/**"
    if re.search(r"\.(test|spec)\.", normalized):
        return "**/*.test.*"

    parts = normalized.split("/")
    if len(parts) > 2:
        return "/".join(parts[:2]) + "/**"
    return normalized


_SHELL_C_RE = re.compile(r"(\bsh|\bbash|\bzsh)\s+-\w*c\b")

_UNSAFE_IN_SHELL = tuple(re.compile(p) for p in (
    r"\brm\b",
    r"\bmv\b",
    r"\bchmod\b",
    r"\bchown\b",
    r"\bsudo\b",
    r"\bdd\b",
    r"\bmkfs\b",
    r"\bfdisk\b",
    r"\btee\b",
    r"\bmount\b",
    r"\bumount\b",
    r"\bshutdown\b",
    r"\breboot\b",
    r"find\s+[^\n]*?-delete",
    r"find\s+[^\n]*?-exec\s+[^\n]*?\brm\b",
    r"sed\s+[^\n]*?-i\b",
))

SAFE_SHELL_UTILITIES: frozenset[str] = frozenset({
    "ls", "cat", "head", "tail", "grep", "echo", "printf", "pwd", "which",
    "whoami", "date", "cut", "uniq", "tr", "column", "paste", "realpath",
    "readlink", "stat", "du", "df", "wc", "sort", "awk",
})

_WRITE_REDIRECT_RE = re.compile(r"^\d*>>?\s*(?P<quote>[\"']?)(?P<target>[^\s\"'&|;]+)(?P=quote)$")
_PROTECTED_DIRS = (".git/", "node_modules/", "dist/", "build/", "target/", "coverage/", ".next/")


def _safe_write_target(target: str, cwd: str) -> bool:
    """Whether a redirection target stays inside the workspace."""
    if target in ("", "/dev/null"):
        return True
    if target.startswith("/dev/"):
        return False
    if target == "/tmp" or target.startswith("/tmp/"):
        return True
    if "$" in target or "`" in target or target.startswith("~"):
        return False

    absolute = target if target.startswith("/") else os.path.normpath(os.path.join(cwd, target))
    rel = os.path.relpath(absolute, cwd)
    if rel == "." or rel == ".." or rel.startswith("../"):
        return False
    if any(rel.startswith(d) for d in _PROTECTED_DIRS):
        return False

    parent = os.path.dirname(absolute) or cwd
    if os.path.exists(parent):
        real_parent = os.path.realpath(parent)
        real_cwd = os.path.realpath(cwd)
        if real_parent != real_cwd and not real_parent.startswith(real_cwd + "/"):
            return False
    return True


def _shell_invocation_safe(commands: list[SimpleCommand], cwd: str) -> bool:
    if not commands:
        return False
    for command in commands:
        text = command.raw_text.strip()
        if any(p.search(text) for p in _UNSAFE_IN_SHELL):
            return False
        if command.name is None or command.name not in SAFE_SHELL_UTILITIES:
            return False
        for redirection in command.redirections:
            m = _WRITE_REDIRECT_RE.match(redirection)
            if m and not _safe_write_target(m.group("target"), cwd):
                return False
    return True


def command_candidate(command_line: str, *, cwd: str | None = None) -> str | None:
    """Candidate ``Bash(...)`` rule for a logged command line."""
    commands = [c for c in decompose(command_line, keep_keywords=True) if c.name is not None]
    if not commands:
        return None

    if _SHELL_C_RE.search(command_line):
        evaluable = [c for c in commands if not c.is_keyword]
        if _shell_invocation_safe(evaluable, cwd or os.getcwd()):
            return f"Bash({generalize_command(' '.join(evaluable[0].words))})"
        return "Bash(sh -c:*)"

    first = commands[0]
    if first.is_keyword:
        return f"Bash({first.name})"
    return f"Bash({generalize_command(' '.join(first.words))})"


def extract_candidate(record: DecisionRecord, *, home: str | None = None) -> str | None:
    """Generalized rule string for one record, or None if it has none."""
    if record.tool == BASH_TOOL:
        if not record.raw_command_or_path:
            return None
        return command_candidate(record.raw_command_or_path, cwd=record.cwd)

    if record.tool not in SEARCH_TOOLS and record.raw_command_or_path:
        pattern = generalize_path(record.raw_command_or_path, cwd=record.cwd, home=home)
        return f"{record.tool}({pattern})"

    if record.tool and not record.tool.startswith("mcp__"):
        return record.tool
    return None


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

_RULE_PARTS_RE = re.compile(r"^(?P<tool>[^(]+)(?:\((?P<payload>.*)\))?$", re.DOTALL)

_SECRET_FILE_RE = re.compile(r"(/\.ssh/|/id_(rsa|dsa|ecdsa|ed25519)$|/\.aws/(credentials|config)|/\.gnupg/|\.(key|pem|pfx|p12)$)")

_BASH_OPERATION_RISK: tuple[tuple[re.Pattern[str], RiskLevel], ...] = tuple(
    (re.compile(p), level) for p, level in (
        (r"^(rm -rf|sudo|dd|mkfs|find -delete|find -exec rm)", RiskLevel.CRITICAL),
        (r"^(ls|pwd|echo|cat|head|tail|grep|rg|find|fd|wc|sort):", RiskLevel.LOW),
        (r"^git (status|log|diff|show|branch)(:|$)", RiskLevel.LOW),
        (r"^(npm|pnpm) view:", RiskLevel.LOW),
        (r"^(npm test|pnpm test|bun test|jest|vitest|pytest):", RiskLevel.LOW),
        (r"^(pnpm (build|typecheck|run)|npm run|bun run|make):", RiskLevel.MEDIUM),
        (r"^(pnpm (add|remove|install|update)|npm (install|uninstall)):", RiskLevel.MEDIUM),
    )
)


def _target_risk(path: str) -> RiskLevel:
    if _SECRET_FILE_RE.search(path) or path in ("/etc/shadow", "/etc/passwd"):
        return RiskLevel.CRITICAL
    if path.endswith(".env") or "/.env." in path:
        return RiskLevel.HIGH
    return RiskLevel.MINIMAL


def _scope_risk(path: str, cwd: str, home: str) -> RiskLevel:
    base = re.sub(r"/?\*+.*$", "", path)
    if base.startswith("~/"):
        resolved = os.path.join(home, base[2:])
    elif base == "~":
        resolved = home
    elif base.startswith("/"):
        resolved = base
    else:
        resolved = os.path.normpath(os.path.join(cwd, base))

    if resolved in ("/etc", "/usr") or resolved.startswith(("/etc/", "/usr/")):
        return RiskLevel.CRITICAL
    if resolved.rstrip("/") == home.rstrip("/") or "~/**" in path:
        return RiskLevel.CRITICAL
    if resolved == cwd or resolved.startswith(cwd.rstrip("/") + "/"):
        return RiskLevel.LOW
    if "*" not in path:
        return RiskLevel.MINIMAL
    return RiskLevel.LOW


def _operation_risk(tool: str, payload: str) -> RiskLevel:
    if tool in ("Read", "Glob", "LS", "Grep", "NotebookRead"):
        return RiskLevel.MINIMAL
    if tool in ("Edit", "MultiEdit", "NotebookEdit"):
        return RiskLevel.MEDIUM
    if tool == "Write":
        return RiskLevel.HIGH
    if tool == BASH_TOOL:
        for regex, level in _BASH_OPERATION_RISK:
            if regex.search(payload):
                return level
        return RiskLevel.HIGH
    return RiskLevel.MEDIUM


def combine_risk(levels: Iterable[RiskLevel]) -> RiskLevel:
    """Fold per-aspect risks into one level."""
    levels = list(levels)
    highs = levels.count(RiskLevel.HIGH)
    mediums = levels.count(RiskLevel.MEDIUM)
    if RiskLevel.CRITICAL in levels or highs >= 2:
        return RiskLevel.CRITICAL
    if highs or mediums >= 2:
        return RiskLevel.HIGH
    if mediums:
        return RiskLevel.MEDIUM
    if all(level is RiskLevel.MINIMAL for level in levels):
        return RiskLevel.MINIMAL
    return RiskLevel.LOW


def assess_risk(pattern: str, *, cwd: str | None = None, home: str | None = None) -> RiskLevel:
    """Risk of adding ``pattern`` to a rule list.

    Combines what the rule targets (secrets, env files), how far it reaches
    (system directories, the whole home directory, the project) and what
    the tool does (read, edit, write, run).
    """
    m = _RULE_PARTS_RE.match(pattern)
    if m is None:
        return RiskLevel.MEDIUM
    tool, payload = m.group("tool"), m.group("payload") or ""
    operation = _operation_risk(tool, payload)
    if tool == BASH_TOOL or not payload:
        return combine_risk([RiskLevel.MINIMAL, operation])
    cwd = cwd or os.getcwd()
    home = home or os.path.expanduser("~")
    return combine_risk([_target_risk(payload), _scope_risk(payload, cwd, home), operation])


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

CONTROL_PATTERNS: frozenset[str] = frozenset(
    f"Bash({kw})" for kw in ("if", "then", "else", "fi", "while", "for", "do", "done")
)

PASS_THROUGH_PATTERNS: frozenset[str] = frozenset({
    "Bash(xargs:*)",
    "Bash(timeout:*)",
    "Bash(sh -c:*)",
    "Bash(bash -c:*)",
    "Bash(zsh -c:*)",
    "Bash(unknown_command)",
})

# frequent enough to deserve a permanent rule instead
PASS_THROUGH_MAX_FREQUENCY = 10

_PROJECT_DEPENDENT = tuple(re.compile(p) for p in (
    r"\*\*/\*\.test\.",
    r"\*\*/\*\.spec\.",
    r"/tests?/",
    r"/spec/",
    r"/__tests__/",
    r"\.env",
    r"\.config",
    r"package\.json",
    r"tsconfig\.json",
    r"pyproject\.toml",
    r"\.eslintrc",
    r"\.prettierrc",
    r"/dist/",
    r"/build/",
    r"/coverage/",
    r"/target/",
    r"/tmp/",
    r"/temp/",
    r"\.tmp$",
    r"\.temp$",
))


def is_project_dependent(pattern: str) -> bool:
    """Patterns whose right answer differs from project to project."""
    return any(p.search(pattern) for p in _PROJECT_DEPENDENT)


@dataclass
class PatternAnalysis:
    """Statistics and a recommendation for one candidate rule."""

    pattern: str
    frequency: int
    first_seen: datetime
    last_seen: datetime
    decisions: dict[str, int]
    recommendation: Recommendation
    reasoning: str
    risk: RiskLevel
    confidence: float
    examples: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "recommendation": self.recommendation.value,
            "reasoning": self.reasoning,
            "frequency": self.frequency,
            "risk": self.risk.value,
            "confidence": self.confidence,
            "decisions": dict(self.decisions),
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "examples": list(self.examples),
        }


def _recommend(pattern: str, counts: dict[str, int], total: int) -> tuple[Recommendation, str]:
    allow, deny, ask = counts["allow"], counts["deny"], counts["ask"]
    allow_ratio, deny_ratio, ask_ratio = allow / total, deny / total, ask / total

    if deny >= 2 and deny_ratio >= 0.7:
        return (
            Recommendation.ADD_TO_DENY,
            f"Frequently auto-denied ({deny}/{total}, {round(deny_ratio * 100)}% deny ratio)",
        )
    if allow >= 3 and allow_ratio >= 0.8 and ask_ratio <= 0.2:
        return (
            Recommendation.ADD_TO_ALLOW,
            f"Frequently auto-allowed ({allow}/{total}, {round(allow_ratio * 100)}% allow ratio)",
        )
    if ask >= 5 and ask_ratio >= 0.7 and deny == 0:
        return (
            Recommendation.KEEP_AS_IS,
            f"Frequently required user decision ({ask} asks, 0 denies); actual user choices unknown",
        )
    if is_project_dependent(pattern):
        return Recommendation.KEEP_AS_IS, "Project-dependent pattern, manage per project"
    if pattern in PASS_THROUGH_PATTERNS and total <= PASS_THROUGH_MAX_FREQUENCY:
        return Recommendation.NEEDS_PATTERN, "Complex pattern requiring session-by-session evaluation"
    if pattern in CONTROL_PATTERNS:
        return Recommendation.ADD_TO_ALLOW, "Safe control structure keyword"
    if total < 3:
        return Recommendation.KEEP_AS_IS, f"Insufficient data ({total} occurrences)"
    return (
        Recommendation.KEEP_AS_IS,
        f"Mixed results ({allow} allows, {deny} denies, {ask} asks), manual review needed",
    )


def analyze_pattern(
    pattern: str,
    records: list[DecisionRecord],
    *,
    cwd: str | None = None,
    home: str | None = None,
) -> PatternAnalysis:
    """Score one group of records sharing a candidate rule."""
    total = len(records)
    counts = {d: 0 for d in ("allow", "deny", "ask", "pass")}
    for record in records:
        if record.decision in counts:
            counts[record.decision] += 1

    recommendation, reasoning = _recommend(pattern, counts, total)
    risk = assess_risk(pattern, cwd=cwd, home=home)
    if recommendation is Recommendation.ADD_TO_ALLOW and risk is RiskLevel.CRITICAL:
        recommendation = Recommendation.KEEP_AS_IS
        reasoning = f"{reasoning}, but the pattern is critical risk"

    dominant = max(counts.values()) / total
    confidence = round(dominant * min(1.0, total / PASS_THROUGH_MAX_FREQUENCY), 2)

    return PatternAnalysis(
        pattern=pattern,
        frequency=total,
        first_seen=min(r.when for r in records),
        last_seen=max(r.when for r in records),
        decisions=counts,
        recommendation=recommendation,
        reasoning=reasoning,
        risk=risk,
        confidence=confidence,
        examples=[r.raw_command_or_path or r.tool for r in records[:3]],
    )


@dataclass
class MiningReport:
    """Analyses grouped by recommendation."""

    total_analyzed: int
    analysis_date: datetime
    analyses: list[PatternAnalysis] = field(default_factory=list)

    def _by(self, recommendation: Recommendation) -> list[PatternAnalysis]:
        return [a for a in self.analyses if a.recommendation is recommendation]

    @property
    def allow_candidates(self) -> list[PatternAnalysis]:
        return self._by(Recommendation.ADD_TO_ALLOW)

    @property
    def deny_candidates(self) -> list[PatternAnalysis]:
        return self._by(Recommendation.ADD_TO_DENY)

    @property
    def pattern_candidates(self) -> list[PatternAnalysis]:
        return self._by(Recommendation.NEEDS_PATTERN)

    @property
    def review_candidates(self) -> list[PatternAnalysis]:
        return self._by(Recommendation.KEEP_AS_IS)


def analyze(
    records: list[DecisionRecord],
    *,
    min_frequency: int = 2,
    cwd: str | None = None,
    home: str | None = None,
) -> MiningReport:
    """Group records by candidate rule and analyze the frequent groups."""
    groups: dict[str, list[DecisionRecord]] = {}
    for record in records:
        candidate = extract_candidate(record, home=home)
        if candidate is not None:
            groups.setdefault(candidate, []).append(record)

    analyses = [
        analyze_pattern(pattern, group, cwd=cwd, home=home)
        for pattern, group in groups.items()
        if len(group) >= min_frequency
    ]
    analyses.sort(key=lambda a: a.frequency, reverse=True)
    logger.info("patterns_analyzed", records=len(records), candidates=len(groups), reported=len(analyses))
    return MiningReport(
        total_analyzed=len(records),
        analysis_date=datetime.now(timezone.utc),
        analyses=analyses,
    )


def mine(
    log_path: str | Path = DEFAULT_LOG_PATH,
    *,
    max_entries: int = 500,
    min_frequency: int = 2,
    since: datetime | None = None,
    include_test: bool = False,
) -> MiningReport:
    """Load the decision log and analyze it."""
    records = load_records(log_path, max_entries=max_entries, since=since, include_test=include_test)
    return analyze(records, min_frequency=min_frequency)


def write_proposals(report: MiningReport, path: str | Path) -> Path:
    """Write the proposed rules to a YAML file for review.

    Returns:
        The path written.
    """
    out = Path(path).expanduser()
    out.parent.mkdir(parents=True, exist_ok=True)
    document = {
        "generated_at": report.analysis_date.isoformat(),
        "total_analyzed": report.total_analyzed,
        "proposed": {
            "allow": [a.pattern for a in report.allow_candidates],
            "deny": [a.pattern for a in report.deny_candidates],
        },
        "allow_candidates": [a.to_dict() for a in report.allow_candidates],
        "deny_candidates": [a.to_dict() for a in report.deny_candidates],
        "needs_pattern": [a.to_dict() for a in report.pattern_candidates],
        "review": [a.to_dict() for a in report.review_candidates],
    }
    tmp = out.with_suffix(out.suffix + ".tmp")
    with open(tmp, "w") as f:
        yaml.safe_dump(document, f, sort_keys=False, allow_unicode=True)
    tmp.rename(out)
    logger.info("proposals_written", path=str(out), allow=len(report.allow_candidates), deny=len(report.deny_candidates))
    return out
