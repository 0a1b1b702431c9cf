"""Rich-based rendering for the cmdgate CLI.

Shows authorization results with their per-command verdicts, and the
rule miner's report, with clear visual formatting.
"""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from cmdgate.miner import MiningReport, PatternAnalysis, RiskLevel
from cmdgate.security.engine import AuthorizationResult, Decision

DECISION_STYLES: dict[Decision, str] = {
    Decision.ALLOW: "green",
    Decision.DENY: "red",
    Decision.ASK: "yellow",
    Decision.PASS: "cyan",
    Decision.SKIP: "dim",
}

DECISION_ICONS: dict[Decision, str] = {
    Decision.ALLOW: "✓",
    Decision.DENY: "✗",
    Decision.ASK: "?",
    Decision.PASS: "→",
    Decision.SKIP: "·",
}

RISK_STYLES: dict[RiskLevel, str] = {
    RiskLevel.MINIMAL: "green",
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


class TerminalUI:
    """Terminal output for the CLI commands."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    @property
    def console(self) -> Console:
        return self._console

    def display_result(self, tool_name: str, subject: str, result: AuthorizationResult) -> None:
        """Display one authorization result with its verdict breakdown."""
        style = DECISION_STYLES[result.decision]
        icon = DECISION_ICONS[result.decision]

        # Build with Text to avoid Rich markup parsing of commands
        body = Text()
        body.append(f"{tool_name}: ", style="bold")
        body.append(subject)
        body.append("\n")
        body.append(result.reason, style="dim")

        self._console.print(
            Panel(
                body,
                title=f"[bold {style}]{icon} {result.decision.value}[/]",
                border_style=style,
                padding=(0, 1),
            )
        )

        if len(result.verdicts) > 1 or any(v.command is not None for v in result.verdicts):
            self._console.print(self._verdict_table(result))

    def _verdict_table(self, result: AuthorizationResult) -> Table:
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("", width=1)
        table.add_column("Command")
        table.add_column("Decision")
        table.add_column("Rule / reason", style="dim")
        for verdict in result.verdicts:
            style = DECISION_STYLES[verdict.decision]
            origin = verdict.command.origin.value if verdict.command is not None else ""
            subject = Text(verdict.subject)
            if origin and origin != "top_level":
                subject.append(f"  ({origin})", style="dim")
            table.add_row(
                Text(DECISION_ICONS[verdict.decision], style=style),
                subject,
                Text(verdict.decision.value, style=style),
                verdict.rule or verdict.reason,
            )
        return table

    def display_report(self, report: MiningReport) -> None:
        """Display the miner's grouped recommendations."""
        header = Text()
        header.append(f"{report.total_analyzed}", style="bold")
        header.append(" decisions analyzed, ")
        header.append(f"{len(report.analyses)}", style="bold")
        header.append(" candidate patterns")
        self._console.print(Panel(header, border_style="cyan", title="Rule Proposals"))

        sections = (
            ("Allow candidates", "green", report.allow_candidates),
            ("Deny candidates", "red", report.deny_candidates),
            ("Needs a narrower pattern", "yellow", report.pattern_candidates),
            ("Review", "dim", report.review_candidates),
        )
        for title, style, analyses in sections:
            if analyses:
                self._console.print(self._analysis_table(title, style, analyses))

    def _analysis_table(self, title: str, style: str, analyses: list[PatternAnalysis]) -> Table:
        table = Table(title=title, title_style=f"bold {style}", title_justify="left", header_style="bold")
        table.add_column("Pattern")
        table.add_column("Freq", justify="right")
        table.add_column("allow/deny/ask/pass", justify="right")
        table.add_column("Risk")
        table.add_column("Conf", justify="right")
        table.add_column("Reasoning", style="dim")
        for a in analyses:
            counts = a.decisions
            table.add_row(
                Text(a.pattern),
                str(a.frequency),
                f"{counts['allow']}/{counts['deny']}/{counts['ask']}/{counts['pass']}",
                Text(a.risk.value, style=RISK_STYLES[a.risk]),
                f"{a.confidence:.2f}",
                a.reasoning,
            )
        return table

    def display_error(self, message: str) -> None:
        """Display an error message."""
        self._console.print(f"[bold red]Error:[/] {message}")

    def display_info(self, message: str) -> None:
        """Display an informational message."""
        self._console.print(f"[dim]{message}[/]")
