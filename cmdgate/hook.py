"""PreToolUse hook adapter.

The agent runs ``cmdgate hook`` before every tool call with a JSON payload
on stdin. The hook answers with ``hookSpecificOutput`` JSON for allow, ask
and deny, and prints nothing for pass so the agent's own permission flow
takes over. Any failure while deciding becomes a deny.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from cmdgate.config import GateConfig, PermissionRules, load_rule_lists
from cmdgate.security.audit import AuditLogger
from cmdgate.security.engine import AuthorizationResult, Decision, authorize_tool
from cmdgate.tools import ToolCall, parse_tool_call

logger = structlog.get_logger()

HOOK_EVENT = "PreToolUse"


class HookInput(BaseModel):
    """The fields of the PreToolUse payload the gate uses."""

    model_config = ConfigDict(extra="ignore")

    session_id: str | None = None
    cwd: str | None = None
    hook_event_name: str | None = None
    tool_name: str = ""
    tool_input: dict[str, Any] = Field(default_factory=dict)


def hook_output(decision: Decision, reason: str) -> dict[str, Any]:
    """Build the JSON object the agent expects for an explicit decision."""
    return {
        "hookSpecificOutput": {
            "hookEventName": HOOK_EVENT,
            "permissionDecision": decision.value,
            "permissionDecisionReason": reason,
        }
    }


def decide(
    call: ToolCall,
    config: GateConfig,
    rules: PermissionRules,
    cwd: str,
) -> AuthorizationResult:
    """Authorize one parsed tool call against merged rules."""
    return authorize_tool(
        call,
        rules.allow,
        rules.deny,
        cwd=cwd,
        passthrough_tools=frozenset(config.passthrough_tools),
    )


def run_hook(
    raw: str | dict[str, Any],
    config: GateConfig,
    *,
    config_dir: str | Path | None = None,
    audit: AuditLogger | None = None,
    rules: PermissionRules | None = None,
) -> dict[str, Any] | None:
    """Process one hook invocation.

    Args:
        raw: The stdin payload, as text or already decoded.
        config: Gate configuration.
        config_dir: Directory holding permissions.yaml, if any.
        audit: Decision log to append to.
        rules: Pre-loaded rules; loaded from the settings sources when None.

    Returns:
        The JSON object to print, or None for pass.
    """
    tool_name: str | None = None
    session_id: str | None = None
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        payload = HookInput.model_validate(data)
        tool_name, session_id = payload.tool_name, payload.session_id
        if not payload.tool_name:
            return None

        call = parse_tool_call(payload.tool_name, payload.tool_input)
        cwd = payload.cwd or os.getcwd()
        if rules is None:
            rules = load_rule_lists(cwd, config, config_dir)
        result = decide(call, config, rules, cwd)

        if audit is not None:
            audit.log_decision(
                payload.tool_name,
                result.decision,
                result.reason,
                call.subject,
                session_id=payload.session_id,
                cwd=cwd,
            )
        logger.info("hook_decision", tool=payload.tool_name, decision=result.decision.value)

        if result.decision is Decision.PASS:
            return None
        return hook_output(result.decision, result.reason)
    except Exception as e:
        logger.error("hook_failed", tool=tool_name, error=str(e))
        if audit is not None:
            audit.log_error(tool_name, str(e), session_id=session_id)
        return hook_output(Decision.DENY, f"Error in authorization hook: {e}")
