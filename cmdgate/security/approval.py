"""Human-in-the-loop resolution of ``ask`` decisions.

In interactive mode the operator sees the command, the reason it was
escalated and the per-command verdicts, then answers y/N. In auto_deny
mode every escalation is refused without prompting.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from cmdgate.config import ApprovalMode
from cmdgate.security.engine import AuthorizationResult, Decision

logger = structlog.get_logger()


def requires_approval(result: AuthorizationResult) -> bool:
    """Whether a result must be confirmed by a human."""
    return result.decision is Decision.ASK


def resolve_escalation(
    tool_name: str,
    subject: str,
    result: AuthorizationResult,
    mode: ApprovalMode,
    console: Console | None = None,
    prompt: Callable[[str], str] = input,
) -> Decision:
    """Turn an ``ask`` result into ``allow`` or ``deny``.

    Args:
        tool_name: The tool being called.
        subject: The command line or path under review.
        result: The engine's result; non-``ask`` results are returned as is.
        mode: The approval mode from config.
        console: Rich console for display (optional).
        prompt: Line reader, ``input`` by default.

    Returns:
        The final decision.
    """
    if not requires_approval(result):
        return result.decision

    if mode == ApprovalMode.AUTO_DENY:
        logger.info("approval_auto_denied", tool=tool_name)
        return Decision.DENY

    con = console or Console(stderr=True)

    body = Text()
    body.append("Tool: ", style="bold yellow")
    body.append(f"{tool_name}\n")
    body.append("Subject: ", style="bold yellow")
    body.append(f"{subject}\n")
    body.append("Reason: ", style="bold yellow")
    body.append(result.reason)
    for verdict in result.verdicts:
        if verdict.decision is Decision.SKIP:
            continue
        body.append(f"\n  {verdict.decision.value:<5} ", style="dim")
        body.append(verdict.subject)

    con.print(Panel(body, title="[bold red]Approval Required[/]", border_style="red"))

    try:
        response = prompt("Approve this operation? [y/N]: ").strip().lower()
    except (EOFError, KeyboardInterrupt):
        con.print("[red]Approval denied (no input).[/]")
        return Decision.DENY

    if response in ("y", "yes"):
        logger.info("approval_granted", tool=tool_name)
        con.print("[green]Approved.[/]")
        return Decision.ALLOW

    logger.info("approval_denied", tool=tool_name)
    con.print("[red]Denied.[/]")
    return Decision.DENY
