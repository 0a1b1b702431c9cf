"""Infer Bash permission from file-edit permissions.

``sed -i`` rewrites files in place. When every target file is already
editable through an ``Edit(...)`` or ``MultiEdit(...)`` allow rule, the
command grants nothing new and can be allowed without a Bash rule.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from cmdgate.security.matcher import coerce_rule, match_path
from cmdgate.shell.lexer import strip_quotes
from cmdgate.shell.models import SimpleCommand

logger = structlog.get_logger()

EDIT_TOOLS = ("Edit", "MultiEdit")
WRITE_TOOLS = ("Edit", "MultiEdit", "Write")

_IN_PLACE_RE = re.compile(r"^(?:-[nErsuz]*i.*|--in-place(?:=.*)?)$")
_EXPANSION_CHARS = set("*?[{$`")
# Characters of addresses, separators and grouping in a sed script
_SED_SKIP_CHARS = set(" \t\n;{}!,$~+0123456789IM")
_SED_SAFE_FLAGS = set("gpiImM0123456789 \t")
_SED_TEXT_COMMANDS = set("aic#rR")
_SED_LABEL_COMMANDS = set(":btTvqQlL")
_SED_SIMPLE_COMMANDS = set("dDgGhHnNpPxz=F")


@dataclass(frozen=True)
class FileCheck:
    path: str
    permitted: bool
    matched_rule: str | None = None
    denied_reason: str | None = None


@dataclass(frozen=True)
class FilePermissionResult:
    files: tuple[FileCheck, ...]

    @property
    def all_permitted(self) -> bool:
        return bool(self.files) and all(f.permitted for f in self.files)

    @property
    def first_denied(self) -> str | None:
        for f in self.files:
            if not f.permitted:
                return f.path
        return None


def _is_path_rule_for(rule: str, tools: tuple[str, ...]) -> bool:
    parsed = coerce_rule(rule)
    return parsed is not None and parsed.tool in tools and bool(parsed.payload)


@dataclass(frozen=True)
class SedInvocation:
    """An in-place ``sed`` split into its scripts and target files."""

    scripts: tuple[str, ...]
    files: tuple[str, ...]
    script_file: bool = False


def _script_text(word: str) -> str:
    # single quotes keep backslashes, which matter inside sed scripts
    if len(word) >= 2 and word[0] == word[-1] == "'" and "'" not in word[1:-1]:
        return word[1:-1]
    return strip_quotes(word)


def parse_sed_in_place(command: SimpleCommand) -> SedInvocation | None:
    """Split an in-place ``sed`` into scripts and files, or None if it is not one."""
    if command.name is None or strip_quotes(command.name).rsplit("/", 1)[-1] != "sed":
        return None

    in_place = False
    script_file = False
    scripts: list[str] = []
    operands: list[str] = []
    args = list(command.args)
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            operands.extend(args[i + 1:])
            break
        if arg in ("-e", "--expression"):
            if i + 1 < len(args):
                scripts.append(_script_text(args[i + 1]))
            i += 2
            continue
        if arg in ("-f", "--file"):
            script_file = True
            i += 2
            continue
        if arg.startswith("--expression="):
            scripts.append(_script_text(arg.split("=", 1)[1]))
        elif arg.startswith("--file="):
            script_file = True
        elif _IN_PLACE_RE.match(arg):
            in_place = True
        elif not arg.startswith("-") or arg == "-":
            operands.append(arg)
        i += 1

    if not in_place:
        return None
    if not scripts and not script_file:
        if not operands:
            return None
        scripts.append(_script_text(operands.pop(0)))
    return SedInvocation(
        scripts=tuple(scripts),
        files=tuple(strip_quotes(f) for f in operands),
        script_file=script_file,
    )


def sed_in_place_targets(command: SimpleCommand) -> list[str] | None:
    """Return the files an in-place ``sed`` edits, or None if it is not one."""
    invocation = parse_sed_in_place(command)
    if invocation is None:
        return None
    return list(invocation.files) or None


def _skip_delimited(script: str, i: int, delim: str, count: int) -> int:
    """Index past ``count`` unescaped ``delim`` characters starting at ``i``."""
    while i < len(script) and count:
        if script[i] == "\\":
            i += 2
            continue
        if script[i] == delim:
            count -= 1
        i += 1
    return i if not count else -1


def _skip_to(script: str, i: int, stops: str) -> int:
    while i < len(script) and script[i] not in stops:
        i += 1
    return i


def runs_or_writes(script: str) -> bool:
    """Whether a sed script can run commands or write files beyond its input.

    GNU sed's ``e`` command and the ``e`` substitution flag run shell
    commands; ``w``, ``W`` and the ``w`` flag write to arbitrary files.
    Anything the scanner does not recognize counts as unsafe.
    """
    i = 0
    while i < len(script):
        ch = script[i]
        if ch in _SED_SKIP_CHARS:
            i += 1
        elif ch == "/":
            i = _skip_delimited(script, i + 1, "/", 1)
        elif ch == "\\":
            if i + 1 >= len(script):
                return True
            i = _skip_delimited(script, i + 2, script[i + 1], 1)
        elif ch in "sy":
            if i + 1 >= len(script) or script[i + 1] in "\\\n":
                return True
            i = _skip_delimited(script, i + 2, script[i + 1], 2)
            if ch == "s" and i != -1:
                end = _skip_to(script, i, ";}\n")
                flags = script[i:end]
                if set(flags) - _SED_SAFE_FLAGS:
                    return True
                i = end
        elif ch in _SED_TEXT_COMMANDS:
            i = _skip_to(script, i + 1, "\n")
        elif ch in _SED_LABEL_COMMANDS:
            i = _skip_to(script, i + 1, ";\n")
        elif ch in _SED_SIMPLE_COMMANDS:
            i += 1
        else:
            # e, w, W and anything unrecognized
            return True
        if i == -1:
            return True
    return False


def check_file_permissions(
    paths: list[str],
    allow_rules: tuple[str, ...] | list[str],
    *,
    cwd: str | None = None,
) -> FilePermissionResult:
    """Check each path against the Edit/MultiEdit allow rules."""
    edit_rules = [r for r in allow_rules if _is_path_rule_for(r, EDIT_TOOLS)]
    checks: list[FileCheck] = []
    for path in paths:
        if not edit_rules:
            checks.append(FileCheck(path, False, denied_reason="no Edit/MultiEdit rules in allow list"))
            continue
        matched = next((r for r in edit_rules if match_path(r, path, cwd=cwd)), None)
        if matched is None:
            checks.append(FileCheck(path, False, denied_reason="no Edit/MultiEdit rule matches"))
        else:
            checks.append(FileCheck(path, True, matched_rule=matched))
    return FilePermissionResult(tuple(checks))


def infer_sed_permission(
    command: SimpleCommand,
    allow_rules: tuple[str, ...] | list[str],
    deny_rules: tuple[str, ...] | list[str],
    *,
    cwd: str | None = None,
) -> str | None:
    """Return the Edit rule that covers an in-place sed, or None.

    Targets using globs or expansions are never inferred, and a target
    matching an Edit/MultiEdit/Write deny rule blocks the inference. So does
    a script that runs commands or writes other files, or one read from a
    script file.
    """
    invocation = parse_sed_in_place(command)
    if invocation is None or not invocation.files:
        return None
    if invocation.script_file:
        logger.debug("sed_inference_skipped", reason="script file", command=command.raw_text)
        return None
    if any(runs_or_writes(script) for script in invocation.scripts):
        logger.debug("sed_inference_skipped", reason="script runs commands or writes files", command=command.raw_text)
        return None
    targets = list(invocation.files)
    if any(_EXPANSION_CHARS & set(t) for t in targets):
        logger.debug("sed_inference_skipped", reason="glob or expansion in target", command=command.raw_text)
        return None

    for rule in deny_rules:
        if not _is_path_rule_for(rule, WRITE_TOOLS):
            continue
        if any(match_path(rule, t, cwd=cwd) for t in targets):
            logger.debug("sed_inference_blocked", rule=rule, command=command.raw_text)
            return None

    result = check_file_permissions(targets, allow_rules, cwd=cwd)
    if not result.all_permitted:
        return None
    return result.files[0].matched_rule
