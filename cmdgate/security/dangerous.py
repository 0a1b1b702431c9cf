"""Dangerous-command signatures.

A fixed, ordered table of signatures is evaluated top to bottom and the
first match wins. Severity is part of each record:

* DENY   - never auto-approved (destructive deletes, raw devices, force push)
* REVIEW - must be escalated to a human; sometimes intentional

Classification is pure: the same text always yields the same Detection.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

logger = structlog.get_logger()


class Severity(str, Enum):
    NONE = "none"
    DENY = "deny"
    REVIEW = "review"


class Scope(str, Enum):
    """What text a signature is matched against."""

    COMMAND = "command"  # one simple command
    LINE = "line"        # the whole command line, pipes included


Predicate = Callable[[re.Match[str], str], bool]


@dataclass(frozen=True)
class Signature:
    """One row of the detector table."""

    name: str
    pattern: re.Pattern[str]
    severity: Severity
    reason: str
    scope: Scope = Scope.COMMAND
    predicate: Predicate | None = None

    def matches(self, text: str) -> bool:
        match = self.pattern.search(text)
        if match is None:
            return False
        if self.predicate is not None:
            return self.predicate(match, text)
        return True


@dataclass(frozen=True)
class Detection:
    """Outcome of classifying one text."""

    severity: Severity
    signature: Signature | None = None

    @property
    def is_dangerous(self) -> bool:
        return self.severity is not Severity.NONE

    @property
    def reason(self) -> str:
        return self.signature.reason if self.signature else ""

    @property
    def name(self) -> str | None:
        return self.signature.name if self.signature else None


NOT_DANGEROUS = Detection(Severity.NONE)

# Anchors: leading assignments (quoted values allowed), any chain of
# wrapper programs that run their arguments as a command (sudo with its
# options, nohup, nice, exec, ...), and a path-qualified program name
# (/bin/rm).
_VALUE = r"""(?:"[^"]*"|'[^']*'|[^\s'";&|])*"""
_ASSIGNS = rf"(?:[A-Za-z_]\w*={_VALUE}\s+)*"
_SUDO = r"(?:\S*/)?(?:sudo|doas)(?:\s+(?:-[ugCDhprtUT]\s+[^\s-]\S*|-\S+))*"
_WRAPPER = (
    r"(?:\S*/)?(?:"
    r"(?:nohup|command|builtin|setsid|npx|pnpx|bunx)(?:\s+-\S+)*"
    r"|exec(?:\s+-a\s+\S+|\s+-\S+)*"
    r"|nice(?:\s+-n\s+\S+|\s+-\S+)*"
    r"|ionice(?:\s+-[cnp]\s+\S+|\s+-\S+)*"
    r"|stdbuf(?:\s+-\S+)*"
    r"|time(?:\s+-[of]\s+\S+|\s+-\S+)*"
    r"|timeout(?:\s+-[sk]\s+\S+|\s+-\S+)*\s+\d\S*"
    r"|env(?:\s+-[uCS]\s+\S+|\s+-\S+)*"
    r")"
)
_CHAIN = rf"(?:(?:{_SUDO}|{_WRAPPER})\s+{_ASSIGNS})*"
_PREFIX = rf"^\s*{_ASSIGNS}{_CHAIN}(?:\S*/)?"
_SHELL = r"(?:\S*/)?(?:sh|bash|zsh|dash|ksh|fish)(?![\w.-])"
_GIT = rf"{_PREFIX}git\s+(?:-[Cc]\s+\S+\s+|--\S+\s+)*"

SYSTEM_DIRS = (
    "bin", "boot", "dev", "etc", "lib", "lib64", "opt", "proc", "root",
    "sbin", "srv", "sys", "usr", "var", "home", "Users", "System",
    "Library", "Applications",
)
_SYSTEM_PATH_RE = re.compile(rf"^/+(?:(?:{'|'.join(SYSTEM_DIRS)})(?:/+[^/]+)?)?/*$")
_GIT_INTERNALS_RE = re.compile(r"(?:^|/)\.git(?:/|$)")

_GIT_CONFIG_READ_FLAGS = frozenset({
    "--get", "--get-all", "--get-regexp", "--get-urlmatch", "--list", "-l",
})


def _words(text: str) -> list[str]:
    try:
        return shlex.split(text, comments=False)
    except ValueError:
        return text.split()


def _short_flags(words: list[str]) -> set[str]:
    letters: set[str] = set()
    for word in words:
        if word.startswith("-") and not word.startswith("--") and len(word) > 1:
            letters.update(word[1:])
    return letters


def _operands(words: list[str]) -> list[str]:
    operands: list[str] = []
    end_of_options = False
    for word in words:
        if not end_of_options and word == "--":
            end_of_options = True
        elif end_of_options or not word.startswith("-"):
            operands.append(word)
    return operands


def _is_dangerous_rm_target(target: str) -> bool:
    # shlex leaves $VAR, globs and backticks unexpanded
    if any(ch in target for ch in "$*?[`"):
        return True
    if target.startswith("~"):
        return True
    if target.rstrip("/") in (".", "..", "") or target.startswith("../"):
        return True
    return bool(_SYSTEM_PATH_RE.match(target))


def _rm_recursive_forced(match: re.Match[str], text: str) -> bool:
    rest = match.group("rest")
    words = _words(rest)
    flags = _short_flags(words)
    recursive = bool(flags & {"r", "R"}) or "--recursive" in words
    forced = "f" in flags or "--force" in words
    if not (recursive and forced):
        return False
    return any(_is_dangerous_rm_target(target) for target in _operands(words))


def _under_sudo(match: re.Match[str], text: str) -> bool:
    return bool(re.search(r"(?:^|[\s/])(?:sudo|doas)\s", text[: match.start("prog")]))


def _heredoc_script(match: re.Match[str], text: str) -> bool:
    # with -c the heredoc is data for the inline script, not the script
    rest = match.group("rest")
    if not re.search(r"(?:^|\s)\d*<<", rest):
        return False
    return "c" not in _short_flags(_words(rest))


def _force_push(match: re.Match[str], text: str) -> bool:
    words = _words(match.group("rest"))
    if "f" in _short_flags(words):
        return True
    for word in words:
        if word in ("--force", "--force-if-includes") or word.startswith("--force-with-lease"):
            return True
        if word.startswith("+") and len(word) > 1:
            return True
    return False


def _touches_git_internals(match: re.Match[str], text: str) -> bool:
    return any(_GIT_INTERNALS_RE.search(t) for t in _operands(_words(match.group("rest"))))


def _commit_bypass(match: re.Match[str], text: str) -> bool:
    if re.search(r"commit\.gpgsign\s*=\s*false", text, re.IGNORECASE):
        return True
    words = _words(match.group("rest"))
    if "--no-verify" in words or "--no-gpg-sign" in words:
        return True
    flags: list[str] = []
    skip_value = False
    for word in words:
        if skip_value:
            skip_value = False
            continue
        if word.startswith("-") and not word.startswith("--") and len(word) > 1:
            flags.append(word)
            # -m, -F, -C, -c take a value
            if word[-1] in "mFCc":
                skip_value = True
    return "n" in _short_flags(flags)


def _config_write(match: re.Match[str], text: str) -> bool:
    words = _words(match.group("rest"))
    if _GIT_CONFIG_READ_FLAGS & set(words):
        return False
    operands = _operands(words)
    if operands and operands[0] in ("get", "list"):
        return False
    return True


SIGNATURES: tuple[Signature, ...] = (
    Signature(
        name="sudo_rm",
        pattern=re.compile(rf"{_PREFIX}(?P<prog>rm)\b"),
        severity=Severity.DENY,
        reason="sudo rm is never auto-approved",
        predicate=_under_sudo,
    ),
    Signature(
        name="rm_recursive_forced",
        pattern=re.compile(rf"{_PREFIX}rm(?P<rest>\s.*)$", re.DOTALL),
        severity=Severity.DENY,
        reason="recursive forced rm on an expanded, home, parent or system path",
        predicate=_rm_recursive_forced,
    ),
    Signature(
        name="dd_device",
        pattern=re.compile(rf"{_PREFIX}dd\s.*/dev/", re.DOTALL),
        severity=Severity.DENY,
        reason="dd touching a block device",
    ),
    Signature(
        name="mkfs",
        pattern=re.compile(rf"{_PREFIX}mkfs(?:\.\w+)?\b"),
        severity=Severity.DENY,
        reason="filesystem creation",
    ),
    Signature(
        name="git_force_push",
        pattern=re.compile(rf"{_GIT}push\b(?P<rest>.*)$", re.DOTALL),
        severity=Severity.DENY,
        reason="forced git push",
        predicate=_force_push,
    ),
    Signature(
        name="git_internals_mutation",
        pattern=re.compile(rf"{_PREFIX}(?:rm|mv|rmdir)(?P<rest>\s.*)$", re.DOTALL),
        severity=Severity.DENY,
        reason="modifies .git internals",
        predicate=_touches_git_internals,
    ),
    Signature(
        name="git_commit_bypass",
        pattern=re.compile(rf"{_GIT}commit\b(?P<rest>.*)$", re.DOTALL),
        severity=Severity.REVIEW,
        reason="git commit bypassing hooks or signing",
        predicate=_commit_bypass,
    ),
    Signature(
        name="git_config_write",
        pattern=re.compile(rf"{_GIT}config\b(?P<rest>.*)$", re.DOTALL),
        severity=Severity.REVIEW,
        reason="git config write",
        predicate=_config_write,
    ),
    Signature(
        name="git_env_override",
        pattern=re.compile(
            rf"^\s*{_ASSIGNS}(?:GIT_\w+|EMAIL|USER|AUTHOR|COMMITTER)={_VALUE}\s+{_ASSIGNS}{_CHAIN}(?:\S*/)?git\b"
        ),
        severity=Severity.REVIEW,
        reason="git run with identity or environment overrides",
    ),
    Signature(
        name="remote_script_pipe",
        pattern=re.compile(
            r"\b(?:curl|wget)\b.*\|\s*(?:sudo\s+(?:-\S+\s+)*)?(?:\S*/)?(?:sh|bash|zsh|fish|dash)\b",
            re.DOTALL,
        ),
        severity=Severity.REVIEW,
        reason="remote script piped into a shell",
        scope=Scope.LINE,
    ),
    Signature(
        name="shell_heredoc_script",
        pattern=re.compile(rf"{_PREFIX}{_SHELL}(?P<rest>\s.*)$", re.DOTALL),
        severity=Severity.REVIEW,
        reason="shell reading its script from a heredoc",
        predicate=_heredoc_script,
    ),
    Signature(
        name="stdin_script_pipe",
        pattern=re.compile(rf"(?<!\|)\|&?\s*{_ASSIGNS}{_CHAIN}{_SHELL}(?![^\n;&|]*\s-[A-Za-z]*c)"),
        severity=Severity.REVIEW,
        reason="script piped into a shell",
        scope=Scope.LINE,
    ),
)


def _first_match(text: str, signatures: tuple[Signature, ...]) -> Detection:
    for signature in signatures:
        if signature.matches(text):
            logger.debug("dangerous_match", signature=signature.name, severity=signature.severity.value)
            return Detection(signature.severity, signature)
    return NOT_DANGEROUS


def classify(text: str, signatures: tuple[Signature, ...] = SIGNATURES) -> Detection:
    """Classify one command against every signature, first match wins."""
    if not text or not text.strip():
        return NOT_DANGEROUS
    return _first_match(text, signatures)


def classify_line(text: str, signatures: tuple[Signature, ...] = SIGNATURES) -> Detection:
    """Classify a whole command line against the line-scope signatures only."""
    if not text or not text.strip():
        return NOT_DANGEROUS
    return _first_match(text, tuple(s for s in signatures if s.scope is Scope.LINE))
