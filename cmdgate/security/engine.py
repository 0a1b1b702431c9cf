"""Authorization decisions for tool calls.

Each simple command of a Bash line gets a Verdict; the verdicts are then
aggregated with a fixed precedence: ask > deny > allow > pass. Verdicts are
produced lazily, so the first ``ask`` stops decomposition of the rest of
the line.

The engine performs no I/O. Rule lists arrive as arguments and results are
returned to the caller, which decides what to log or print.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from enum import Enum

import structlog

from cmdgate.security.dangerous import Severity, classify, classify_line
from cmdgate.security.inference import infer_sed_permission
from cmdgate.security.matcher import is_safe_builtin, match_command, match_rule
from cmdgate.shell import ParseTier, SimpleCommand, iter_commands
from cmdgate.tools import BashCall, FileToolCall, SearchToolCall, ToolCall

logger = structlog.get_logger()

# Search-style tools that fall through to the agent's own prompt
PASSTHROUGH_TOOLS: frozenset[str] = frozenset({
    "ExitPlanMode",
    "WebFetch",
    "WebSearch",
    "Glob",
    "Search",
    "Grep",
})


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"
    PASS = "pass"
    SKIP = "skip"


@dataclass(frozen=True)
class Verdict:
    """Outcome for one simple command or one path."""

    decision: Decision
    subject: str
    reason: str = ""
    rule: str | None = None
    command: SimpleCommand | None = None


@dataclass(frozen=True)
class AuthorizationResult:
    """Aggregate outcome for a whole tool call."""

    decision: Decision
    reason: str
    verdicts: tuple[Verdict, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOW


@dataclass(frozen=True)
class RuleSet:
    """Read-only snapshot of the allow and deny rule lists."""

    allow: tuple[str, ...] = ()
    deny: tuple[str, ...] = ()

    @classmethod
    def of(cls, allow: Iterable[str] | None, deny: Iterable[str] | None) -> RuleSet:
        return cls(
            allow=tuple(r for r in (allow or ()) if r and r.strip()),
            deny=tuple(r for r in (deny or ()) if r and r.strip()),
        )

    @property
    def configured(self) -> bool:
        return bool(self.allow or self.deny)


def evaluate_command(command: SimpleCommand, rules: RuleSet, *, cwd: str | None = None) -> Verdict:
    """Derive the verdict for one simple command."""
    subject = command.raw_text.strip()

    if command.is_keyword:
        return Verdict(Decision.SKIP, subject, f"Control structure keyword '{command.name}'", command=command)

    detection = classify(command.raw_text)
    if detection.severity is Severity.DENY:
        return Verdict(Decision.DENY, subject, detection.reason, command=command)
    if detection.severity is Severity.REVIEW:
        return Verdict(Decision.ASK, subject, detection.reason, command=command)

    for rule in rules.deny:
        if match_command(rule, command):
            return Verdict(Decision.DENY, subject, f"Individual command blocked: {subject}", rule=rule, command=command)

    if rules.allow:
        for rule in rules.allow:
            if match_command(rule, command):
                return Verdict(Decision.ALLOW, subject, rule=rule, command=command)
        if is_safe_builtin(command):
            return Verdict(Decision.ALLOW, subject, rule="built-in safe command", command=command)

    edit_rule = infer_sed_permission(command, rules.allow, rules.deny, cwd=cwd)
    if edit_rule is not None:
        return Verdict(
            Decision.ALLOW,
            subject,
            f"sed -i inferred from Edit permissions ({edit_rule})",
            rule=edit_rule,
            command=command,
        )

    return Verdict(Decision.PASS, subject, command=command)


def _quoted(verdicts: list[Verdict]) -> str:
    return ", ".join(f'"{v.subject}"' for v in verdicts)


def aggregate(verdicts: Iterable[Verdict], *, rules_configured: bool = True) -> AuthorizationResult:
    """Combine per-command verdicts into one result.

    Consumption stops at the first ``ask``. Otherwise any ``deny`` wins,
    then a missing rule configuration asks, a line of nothing but keywords
    asks, unanimous ``allow`` allows, and anything else passes.
    """
    seen: list[Verdict] = []
    for verdict in verdicts:
        seen.append(verdict)
        if verdict.decision is Decision.ASK:
            reason = (
                f"Command '{verdict.subject}': {verdict.reason}"
                if verdict.reason
                else "Manual review required for dangerous command"
            )
            return AuthorizationResult(Decision.ASK, reason, tuple(seen))

    result = tuple(seen)
    denied = [v for v in seen if v.decision is Decision.DENY]
    if denied:
        details = ", ".join(
            f'"{v.subject}" -> blocked by {v.rule}' if v.rule else f'"{v.subject}" -> {v.reason}'
            for v in denied
        )
        return AuthorizationResult(
            Decision.DENY,
            f"Blocked by security rules ({len(denied)} commands): {details}",
            result,
        )

    evaluable = [v for v in seen if v.decision is not Decision.SKIP]
    if not rules_configured:
        return AuthorizationResult(
            Decision.ASK,
            f"Manual review required for commands ({len(evaluable)} commands): "
            f"{_quoted(evaluable)} - no permission patterns configured",
            result,
        )

    if not evaluable:
        if not seen:
            return AuthorizationResult(Decision.ASK, "No commands to evaluate", result)
        return AuthorizationResult(
            Decision.ASK,
            f"Only control structure keywords present ({len(seen)} keywords): {_quoted(seen)}",
            result,
        )

    if all(v.decision is Decision.ALLOW for v in evaluable):
        details = ", ".join(f'"{v.subject}" -> {v.rule}' for v in evaluable)
        return AuthorizationResult(
            Decision.ALLOW,
            f"All commands matched allow patterns ({len(evaluable)} commands): {details}",
            result,
        )

    passed = [v for v in evaluable if v.decision is Decision.PASS]
    return AuthorizationResult(
        Decision.PASS,
        f"Commands passed through for evaluation ({len(passed)} commands): {_quoted(passed)}",
        result,
    )


def authorize(
    command_line: str,
    allow_rules: Iterable[str] | None,
    deny_rules: Iterable[str] | None,
    *,
    cwd: str | None = None,
) -> AuthorizationResult:
    """Authorize a Bash command line.

    Args:
        command_line: The full line as the agent proposed it.
        allow_rules: Rule strings from ``permissions.allow``.
        deny_rules: Rule strings from ``permissions.deny``.
        cwd: Working directory used to resolve paths in ``sed -i`` targets.

    Returns:
        The aggregate result with the verdicts that produced it.
    """
    rules = RuleSet.of(allow_rules, deny_rules)

    line_detection = classify_line(command_line)
    if line_detection.is_dangerous:
        decision = Decision.DENY if line_detection.severity is Severity.DENY else Decision.ASK
        verdict = Verdict(decision, command_line.strip(), line_detection.reason)
        logger.info("dangerous_line", signature=line_detection.name, decision=decision.value)
        return aggregate([verdict], rules_configured=rules.configured)

    lenient_seen = False

    def verdicts() -> Iterator[Verdict]:
        nonlocal lenient_seen
        for command in iter_commands(command_line, keep_keywords=True):
            if command.tier is ParseTier.LENIENT:
                lenient_seen = True
            yield evaluate_command(command, rules, cwd=cwd)

    result = aggregate(verdicts(), rules_configured=rules.configured)
    if result.decision is Decision.ALLOW and lenient_seen:
        result = replace(
            result,
            decision=Decision.ASK,
            reason=f"Could not confidently decompose the command line; {result.reason}",
        )
    logger.debug("command_authorized", decision=result.decision.value, commands=len(result.verdicts))
    return result


def authorize_path(
    tool_name: str,
    file_path: str | None,
    allow_rules: Iterable[str] | None,
    deny_rules: Iterable[str] | None,
    *,
    cwd: str | None = None,
    passthrough_tools: frozenset[str] = PASSTHROUGH_TOOLS,
) -> AuthorizationResult:
    """Authorize a non-Bash tool call from its tool name and path.

    Raises:
        ValueError: If ``tool_name`` is empty.
    """
    if not tool_name:
        raise ValueError("tool_name must be a non-empty string")

    rules = RuleSet.of(allow_rules, deny_rules)
    subject = file_path or tool_name

    deny_matches = [r for r in rules.deny if match_rule(r, tool_name, file_path, cwd=cwd)]
    if deny_matches:
        verdict = Verdict(Decision.DENY, subject, rule=deny_matches[0])
        return AuthorizationResult(Decision.DENY, f"Matched deny patterns: {', '.join(deny_matches)}", (verdict,))

    allow_matches = [r for r in rules.allow if match_rule(r, tool_name, file_path, cwd=cwd)]
    if allow_matches:
        verdict = Verdict(Decision.ALLOW, subject, rule=allow_matches[0])
        return AuthorizationResult(Decision.ALLOW, f"Matched allow patterns: {', '.join(allow_matches)}", (verdict,))

    if not rules.configured:
        reason = "No permission patterns configured"
        return AuthorizationResult(Decision.ASK, reason, (Verdict(Decision.ASK, subject, reason),))

    if tool_name in passthrough_tools:
        reason = f"Tool '{tool_name}' has no explicit patterns, delegating to the agent"
        return AuthorizationResult(Decision.PASS, reason, (Verdict(Decision.PASS, subject, reason),))

    reason = "No patterns matched"
    return AuthorizationResult(Decision.ASK, reason, (Verdict(Decision.ASK, subject, reason),))


def authorize_tool(
    call: ToolCall,
    allow_rules: Iterable[str] | None,
    deny_rules: Iterable[str] | None,
    *,
    cwd: str | None = None,
    passthrough_tools: frozenset[str] = PASSTHROUGH_TOOLS,
) -> AuthorizationResult:
    """Authorize any parsed tool call."""
    if isinstance(call, BashCall):
        return authorize(call.command, allow_rules, deny_rules, cwd=cwd)
    if isinstance(call, FileToolCall):
        path: str | None = call.file_path
    elif isinstance(call, SearchToolCall):
        path = call.effective_path
    else:
        path = call.path
    return authorize_path(
        call.tool_name, path, allow_rules, deny_rules, cwd=cwd, passthrough_tools=passthrough_tools
    )
