"""Security layer: dangerous-command detection, rule matching, decisions, audit."""

from __future__ import annotations

from cmdgate.security.approval import requires_approval, resolve_escalation
from cmdgate.security.audit import AuditLogger
from cmdgate.security.dangerous import Detection, Severity, classify, classify_line
from cmdgate.security.engine import (
    AuthorizationResult,
    Decision,
    Verdict,
    aggregate,
    authorize,
    authorize_path,
    authorize_tool,
)
from cmdgate.security.matcher import InvalidRule, Rule, match_command, match_path, match_rule, parse_rule
from cmdgate.security.paths import normalize_path, normalize_pattern

__all__ = [
    "AuditLogger",
    "AuthorizationResult",
    "Decision",
    "Detection",
    "InvalidRule",
    "Rule",
    "Severity",
    "Verdict",
    "aggregate",
    "authorize",
    "authorize_path",
    "authorize_tool",
    "classify",
    "classify_line",
    "match_command",
    "match_path",
    "match_rule",
    "normalize_path",
    "normalize_pattern",
    "parse_rule",
    "requires_approval",
    "resolve_escalation",
]
