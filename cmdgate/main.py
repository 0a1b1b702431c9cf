"""CLI entry point for cmdgate using Click."""

from __future__ import annotations

import json
import os
import sys
from typing import TYPE_CHECKING

import click
import structlog

from cmdgate import __version__
from cmdgate.config import (
    CONFIG_ENV,
    GateConfig,
    PermissionRules,
    load_all_config,
    load_gate_config,
    load_rule_lists,
    resolve_config_dir,
    settings_sources,
)

if TYPE_CHECKING:
    from cmdgate.security.engine import AuthorizationResult

logger = structlog.get_logger()

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}

# ask and deny get distinct codes so shell callers can branch on them
EXIT_CODES = {"allow": 0, "pass": 0, "ask": 2, "deny": 3}


def _configure_logging(log_level: str) -> None:
    """Configure structlog for stderr output; stdout carries results only."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(log_level.upper(), 30)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def _load_config(config_dir: str | None, log_level: str | None) -> GateConfig:
    """Load gate.yaml and configure logging from it."""
    config_path = resolve_config_dir(config_dir)
    config = load_gate_config(config_path)
    _configure_logging(log_level or config.log_level)
    return config


def _rules_for(
    allow: tuple[str, ...],
    deny: tuple[str, ...],
    cwd: str,
    config: GateConfig,
    config_dir: str | None,
) -> PermissionRules:
    """Rules given on the command line, or the merged settings sources."""
    if allow or deny:
        return PermissionRules(allow=list(allow), deny=list(deny))
    return load_rule_lists(cwd, config, resolve_config_dir(config_dir))


def _result_json(tool_name: str, subject: str, result: AuthorizationResult) -> str:
    return json.dumps(
        {
            "tool": tool_name,
            "subject": subject,
            "decision": result.decision.value,
            "reason": result.reason,
            "verdicts": [
                {
                    "subject": v.subject,
                    "decision": v.decision.value,
                    "rule": v.rule,
                    "reason": v.reason,
                    "origin": v.command.origin.value if v.command is not None else None,
                }
                for v in result.verdicts
            ],
        },
        indent=2,
    )


config_dir_option = click.option(
    "--config-dir",
    type=click.Path(file_okay=False),
    default=None,
    help=f"Path to configuration directory. Defaults to {CONFIG_ENV} env or ./config/",
)

log_level_option = click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to CMDGATE_LOG_LEVEL env or the config value.",
)

rule_options = [
    click.option("--allow", "allow", multiple=True, help="Allow rule (repeatable). Skips settings files."),
    click.option("--deny", "deny", multiple=True, help="Deny rule (repeatable). Skips settings files."),
    click.option(
        "--cwd",
        type=click.Path(file_okay=False),
        default=None,
        help="Working directory for path resolution. Defaults to the current directory.",
    ),
]


def with_rule_options(f):
    for option in reversed(rule_options):
        f = option(f)
    return f


@click.group()
@click.version_option(version=__version__, prog_name="cmdgate")
def cli() -> None:
    """cmdgate - authorization gate for coding-agent tool calls."""


@cli.command()
@config_dir_option
@log_level_option
def hook(config_dir: str | None, log_level: str | None) -> None:
    """Answer a PreToolUse hook: JSON payload on stdin, decision on stdout.

    Prints nothing when the gate has no opinion, so the agent's own
    permission flow decides.
    """
    from cmdgate.hook import hook_output, run_hook
    from cmdgate.security.audit import AuditLogger
    from cmdgate.security.engine import Decision

    try:
        config = _load_config(config_dir, log_level)
    except Exception as e:
        _configure_logging(log_level or "WARNING")
        logger.error("config_invalid", error=str(e))
        click.echo(json.dumps(hook_output(Decision.DENY, f"Invalid cmdgate configuration: {e}")))
        return

    audit = None
    try:
        audit = AuditLogger(config.audit_log_path, config.audit_max_bytes, config.audit_backups)
    except OSError as e:
        logger.warning("audit_log_unavailable", path=config.audit_log_path, error=str(e))

    try:
        output = run_hook(
            sys.stdin.read(),
            config,
            config_dir=resolve_config_dir(config_dir),
            audit=audit,
        )
    finally:
        if audit is not None:
            audit.close()

    if output is not None:
        click.echo(json.dumps(output))


@cli.command()
@click.argument("command")
@with_rule_options
@click.option("--interactive", "-i", is_flag=True, default=False, help="Resolve 'ask' with an approval prompt.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON.")
@config_dir_option
@log_level_option
def check(
    command: str,
    allow: tuple[str, ...],
    deny: tuple[str, ...],
    cwd: str | None,
    interactive: bool,
    as_json: bool,
    config_dir: str | None,
    log_level: str | None,
) -> None:
    """Authorize a Bash COMMAND line and show how each part was decided.

    Exit status: 0 allow or pass, 2 ask, 3 deny, 1 on error.
    """
    from cmdgate.security.approval import resolve_escalation
    from cmdgate.security.engine import authorize
    from cmdgate.ui.terminal import TerminalUI

    try:
        config = _load_config(config_dir, log_level)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    work_dir = cwd or os.getcwd()
    rules = _rules_for(allow, deny, work_dir, config, config_dir)
    result = authorize(command, rules.allow, rules.deny, cwd=work_dir)

    if as_json:
        click.echo(_result_json("Bash", command, result))
    else:
        TerminalUI().display_result("Bash", command, result)

    decision = result.decision
    if interactive:
        decision = resolve_escalation("Bash", command, result, config.approval_mode)
    sys.exit(EXIT_CODES[decision.value])


@cli.command("check-path")
@click.argument("tool_name")
@click.argument("path", required=False)
@with_rule_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON.")
@config_dir_option
@log_level_option
def check_path(
    tool_name: str,
    path: str | None,
    allow: tuple[str, ...],
    deny: tuple[str, ...],
    cwd: str | None,
    as_json: bool,
    config_dir: str | None,
    log_level: str | None,
) -> None:
    """Authorize a file tool call, e.g. ``cmdgate check-path Edit src/app.py``."""
    from cmdgate.security.engine import authorize_path
    from cmdgate.ui.terminal import TerminalUI

    try:
        config = _load_config(config_dir, log_level)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    work_dir = cwd or os.getcwd()
    rules = _rules_for(allow, deny, work_dir, config, config_dir)
    result = authorize_path(
        tool_name,
        path,
        rules.allow,
        rules.deny,
        cwd=work_dir,
        passthrough_tools=frozenset(config.passthrough_tools),
    )

    subject = path or tool_name
    if as_json:
        click.echo(_result_json(tool_name, subject, result))
    else:
        TerminalUI().display_result(tool_name, subject, result)
    sys.exit(EXIT_CODES[result.decision.value])


@cli.command()
@click.option("--log", "log_path", type=click.Path(dir_okay=False), default=None, help="Decision log to analyze.")
@click.option("--max-entries", type=click.IntRange(min=1), default=None, help="Newest N records to analyze.")
@click.option("--min-frequency", type=click.IntRange(min=1), default=None, help="Minimum occurrences per pattern.")
@click.option("--since", type=click.DateTime(), default=None, help="Ignore records older than this.")
@click.option("--include-test", is_flag=True, default=False, help="Include sessions whose id contains 'test'.")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Proposals YAML file.")
@click.option("--no-write", is_flag=True, default=False, help="Only display the report.")
@config_dir_option
@log_level_option
def mine(
    log_path: str | None,
    max_entries: int | None,
    min_frequency: int | None,
    since,
    include_test: bool,
    output: str | None,
    no_write: bool,
    config_dir: str | None,
    log_level: str | None,
) -> None:
    """Propose allow/deny rules from past decisions.

    Proposals are written to a separate YAML file for review; settings
    files are never modified.
    """
    from cmdgate.miner import mine as mine_log
    from cmdgate.miner import write_proposals
    from cmdgate.ui.terminal import TerminalUI

    try:
        config = _load_config(config_dir, log_level)
        report = mine_log(
            log_path or config.audit_log_path,
            max_entries=max_entries or config.miner.max_entries,
            min_frequency=min_frequency or config.miner.min_frequency,
            since=since,
            include_test=include_test,
        )
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        logger.exception("mine_failed")
        sys.exit(1)

    ui = TerminalUI()
    ui.display_report(report)
    if not no_write:
        written = write_proposals(report, output or config.miner.proposals_path)
        ui.display_info(f"Proposals written to {written}")


@cli.command()
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Path to configuration directory.",
)
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Directory whose settings to list.")
def check_config(config_dir: str | None, cwd: str | None) -> None:
    """Validate configuration files and list the rule sources."""
    config_path = resolve_config_dir(config_dir)

    try:
        gate_cfg, permissions = load_all_config(config_path)
    except FileNotFoundError as e:
        click.echo(f"FAIL: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"FAIL: {e}", err=True)
        sys.exit(1)

    click.echo("Configuration OK")
    click.echo(f"  Approval mode: {gate_cfg.approval_mode.value}")
    click.echo(f"  Audit log: {gate_cfg.audit_log_path}")
    click.echo(f"  permissions.yaml: {len(permissions.allow)} allow, {len(permissions.deny)} deny")
    click.echo("  Settings sources:")
    for source in settings_sources(cwd or os.getcwd(), gate_cfg):
        state = "found" if source.exists() else "missing"
        click.echo(f"    - {source} ({state})")


if __name__ == "__main__":
    cli()
