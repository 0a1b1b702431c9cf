"""Permission rule parsing and matching.

Rules come from the ``permissions.allow`` / ``permissions.deny`` lists of
the agent settings:

    Bash(git status)        exact command prefix
    Bash(npm:*)             prefix at the start, or after wrappers
    Edit(src/**)            gitignore-style path glob
    Edit(!node_modules/**)  negated path glob
    Glob                    bare tool name

Malformed rules never match. They are reported once through a structlog
warning and otherwise ignored.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from functools import lru_cache

import structlog

from cmdgate.security.paths import has_traversal, normalize_path, normalize_pattern
from cmdgate.shell.lexer import is_assignment
from cmdgate.shell.models import SimpleCommand

logger = structlog.get_logger()

_RULE_RE = re.compile(r"^(?P<tool>[A-Za-z_][\w.*-]*)(?:\((?P<payload>.*)\))?$", re.DOTALL)

# Tools whose rules are written without a path: "TodoWrite" or "TodoWrite(**)"
NO_PATH_TOOLS: frozenset[str] = frozenset({
    "TodoRead",
    "TodoWrite",
    "Task",
    "BashOutput",
    "KillBash",
    "Glob",
    "ExitPlanMode",
    "WebSearch",
    "ListMcpResourcesTool",
    "ReadMcpResourceTool",
})

UNIVERSAL_PATTERNS: frozenset[str] = frozenset({"**", "./**", "/**", "*", "**/*"})

# Wrappers stripped before a "prefix:*" comparison; value = options taking an argument
_WRAPPERS: dict[str, frozenset[str]] = {
    "timeout": frozenset({"-s", "--signal", "-k", "--kill-after"}),
    "time": frozenset({"-o", "-f"}),
    "nice": frozenset({"-n", "--adjustment"}),
    "nohup": frozenset(),
    "env": frozenset({"-u", "--unset", "-C", "--chdir"}),
    "xargs": frozenset({"-I", "-n", "-P", "-L", "-l", "-d", "-E", "-e", "-s", "-a"}),
    "npx": frozenset({"-p", "--package"}),
    "pnpx": frozenset(),
    "bunx": frozenset(),
}


class InvalidRule(ValueError):
    """Raised when a rule string violates the rule grammar."""

    def __init__(self, rule: str, reason: str) -> None:
        self.rule = rule
        self.reason = reason
        super().__init__(f"Invalid rule {rule!r}: {reason}")


@dataclass(frozen=True)
class Rule:
    """A parsed permission rule."""

    tool: str
    payload: str | None
    raw: str

    @property
    def is_command_rule(self) -> bool:
        return self.tool == "Bash"

    @property
    def is_wildcard(self) -> bool:
        """``Bash(prefix:*)`` form."""
        return self.payload is not None and self.payload.endswith(":*")

    @property
    def prefix(self) -> str:
        if self.payload is None:
            return ""
        return self.payload[:-2].rstrip() if self.is_wildcard else self.payload

    def __str__(self) -> str:
        return self.raw


def parse_rule(text: str) -> Rule:
    """Parse a rule string.

    Raises:
        InvalidRule: If the text is not ``Tool`` or ``Tool(payload)``, the
            payload is empty, or a Bash rule uses the path wildcard ``**``.
    """
    raw = text.strip()
    if not raw:
        raise InvalidRule(text, "empty rule")
    match = _RULE_RE.match(raw)
    if match is None:
        raise InvalidRule(text, "expected Tool or Tool(pattern)")
    tool, payload = match.group("tool"), match.group("payload")
    if payload is not None and not payload.strip():
        raise InvalidRule(text, "empty pattern")
    if tool == "Bash" and payload is not None:
        if payload.strip() == "**":
            raise InvalidRule(text, "** is a path wildcard, not a command prefix")
        if payload.endswith(":*") and not payload[:-2].strip():
            raise InvalidRule(text, "empty command prefix")
    return Rule(tool=tool, payload=payload, raw=raw)


@lru_cache(maxsize=1024)
def _cached_rule(text: str) -> Rule | None:
    try:
        return parse_rule(text)
    except InvalidRule as e:
        logger.warning("rule_invalid", rule=e.rule, reason=e.reason)
        return None


def coerce_rule(rule: Rule | str) -> Rule | None:
    """Return a Rule, or None for a malformed rule string."""
    if isinstance(rule, Rule):
        return rule
    return _cached_rule(rule)


def looks_like_rule(text: str) -> bool:
    """Whether text is written as ``Tool(...)`` rather than a bare glob."""
    return bool(re.match(r"^[A-Z][\w.-]*\(.*\)$", text.strip(), re.DOTALL)) or text.startswith("mcp__")


# -- command rules ------------------------------------------------------------


def _command_words(command: SimpleCommand | str) -> list[str]:
    if isinstance(command, SimpleCommand):
        return [*command.assignments, *command.words, *command.redirections]
    return command.strip().lstrip("&").split()


def _strip_wrappers(words: list[str]) -> list[str]:
    """Drop leading assignments and wrapper programs with their options."""
    i = 0
    while i < len(words):
        word = words[i]
        if is_assignment(word):
            i += 1
            continue
        program = word.rsplit("/", 1)[-1]
        if program not in _WRAPPERS:
            break
        value_flags = _WRAPPERS[program]
        i += 1
        while i < len(words) and words[i].startswith("-"):
            i += 2 if words[i] in value_flags else 1
        if program == "timeout" and i < len(words) and re.match(r"^\d+(?:\.\d+)?[smhd]?$", words[i]):
            i += 1
    return words[i:]


def _starts_with_words(words: list[str], prefix: str) -> bool:
    text = " ".join(words)
    return text == prefix or text.startswith(prefix + " ")


def match_command(rule: Rule | str, command: SimpleCommand | str) -> bool:
    """Whether a command rule matches one simple command.

    ``Bash(p)`` matches when the whitespace-normalized command starts with
    ``p`` at a word boundary. ``Bash(p:*)`` also matches after leading
    assignments and wrappers (``timeout 15 npm test`` for ``npm:*``).
    A payload containing ``*`` otherwise is an fnmatch glob over the whole
    command. Invalid rules and non-Bash rules never match.
    """
    parsed = coerce_rule(rule)
    if parsed is None or not parsed.is_command_rule:
        return False
    words = _command_words(command)
    if not words:
        return False
    if parsed.payload is None:
        return True

    prefix = " ".join(parsed.prefix.split())
    if parsed.is_wildcard:
        return _starts_with_words(words, prefix) or _starts_with_words(_strip_wrappers(words), prefix)
    if "*" in parsed.payload:
        return fnmatchcase(" ".join(words), prefix)
    return _starts_with_words(words, prefix)


_FIND_UNSAFE = tuple(re.compile(p) for p in (
    r"(?:^|\s)-exec", r"(?:^|\s)-ok", r"(?:^|\s)-delete", r"(?:^|\s)-fprint", r"(?:^|\s)-fls",
    r"/etc/", r"/proc/", r"/sys/", r"/dev/", r"/var/log", r"/usr/bin",
    r"/usr/sbin", r"/bin/", r"/sbin/",
))


def _is_safe_find(text: str) -> bool:
    if any(p.search(text) for p in _FIND_UNSAFE):
        return False
    match = re.search(r"find\s+(\S+)", text)
    start = match.group(1) if match else ""
    if not start or start.startswith("-") or start == "." or start.startswith("./"):
        return True
    if not start.startswith("/") and "../../../" not in start:
        return True
    home = os.path.expanduser("~")
    return start.startswith((home, "/tmp", "/var/tmp"))


def is_safe_builtin(command: SimpleCommand | str) -> bool:
    """Commands treated as allowed whenever allow rules are configured.

    ``sleep``, and a ``find`` with no side-effecting action (``-exec``,
    ``-delete`` and the like) outside system directories.
    """
    words = _strip_wrappers(_command_words(command))
    if not words:
        return False
    if words[0] == "sleep":
        return True
    if words[0] == "find":
        return _is_safe_find(" ".join(words))
    return False


# -- path rules ---------------------------------------------------------------


def _glob_regex(glob: str) -> str:
    """Translate a path glob: ``**`` spans separators, ``*`` and ``?`` do not."""
    out: list[str] = []
    i = 0
    while i < len(glob):
        if glob.startswith("**", i):
            out.append(".*")
            i += 2
        elif glob[i] == "*":
            out.append("[^/]*")
            i += 1
        elif glob[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(glob[i]))
            i += 1
    return "".join(out)


def _anchored(path: str, body: str) -> bool:
    """Anchored at the tool root (relative form) or the filesystem root."""
    body = body.rstrip("/")
    if not body:
        return not has_traversal(path)
    regex = _glob_regex(body) + "(?:/.*)?"
    if path.startswith("/"):
        return re.fullmatch("/" + regex, path) is not None
    return re.fullmatch(regex, path) is not None


def match_gitignore(path: str, pattern: str) -> bool:
    """Match a normalized path against a normalized gitignore-style pattern."""
    if not path or not pattern:
        return False

    if pattern in UNIVERSAL_PATTERNS:
        if has_traversal(path):
            return False
        # ./** means inside the working directory only
        if pattern == "./**" and path.startswith("/"):
            return False
        return True

    if pattern.endswith("/") and pattern != "/":
        directory = pattern[:-1]
        if directory.startswith("/"):
            return _anchored(path, directory)
        return re.search(rf"(?:^|/){_glob_regex(directory)}(?:/|$)", path) is not None

    while pattern.startswith("**/"):
        pattern = pattern[3:]
        if pattern in UNIVERSAL_PATTERNS:
            return match_gitignore(path, "**")

    if pattern.endswith("/**"):
        prefix = pattern[:-3]
        if prefix in ("", "."):
            return match_gitignore(path, "./**" if prefix == "." else "/**")
        if prefix.startswith("/"):
            return _anchored(path, prefix[1:])
        return re.search(rf"(?:^|/){_glob_regex(prefix)}(?:/|$)", path) is not None

    if "/**/" in pattern:
        first, rest = pattern.split("/**/", 1)
        first = first.lstrip("/")
        if first and rest:
            return re.search(f"{_glob_regex(first)}.*{_glob_regex(rest)}", path) is not None

    if pattern.startswith("/"):
        return _anchored(path, pattern[1:])

    if "/" in pattern:
        return re.search(rf"(?:^|/){_glob_regex(pattern)}(?:/|$)", path) is not None

    if "." in pattern:
        return fnmatchcase(path.rsplit("/", 1)[-1], pattern)
    return any(fnmatchcase(part, pattern) for part in path.split("/") if part)


def match_path(
    pattern_or_rule: Rule | str,
    path: str,
    tool_name: str | None = None,
    *,
    cwd: str | None = None,
) -> bool:
    """Match a file path against a glob or a ``Tool(glob)`` rule.

    ``Bash(...)`` rules never match a path. With ``tool_name`` the rule's
    tool must be that tool. A leading ``!`` negates the glob; a negated
    glob never matches a path that climbs out with ``..``.
    """
    if isinstance(pattern_or_rule, Rule) or looks_like_rule(pattern_or_rule):
        rule = coerce_rule(pattern_or_rule)
        if rule is None or rule.is_command_rule:
            return False
        if tool_name is not None and not _tool_matches(rule.tool, tool_name):
            return False
        if rule.payload is None:
            return True
        glob = rule.payload
    else:
        glob = pattern_or_rule

    if not path:
        return False
    if cwd is None:
        cwd = os.getcwd()
    normalized = normalize_path(path, cwd)
    if glob.startswith("!"):
        if has_traversal(normalized):
            return False
        return not match_gitignore(normalized, normalize_pattern(glob[1:], cwd))
    return match_gitignore(normalized, normalize_pattern(glob, cwd))


def _tool_matches(rule_tool: str, tool_name: str) -> bool:
    if rule_tool == tool_name:
        return True
    # "mcp__server" covers every tool of that server
    if rule_tool.startswith("mcp__"):
        return tool_name.startswith(rule_tool + "__") or fnmatchcase(tool_name, rule_tool)
    return False


def match_rule(
    rule: Rule | str,
    tool_name: str,
    path: str | None = None,
    *,
    cwd: str | None = None,
) -> bool:
    """Whether a non-Bash rule applies to a tool call.

    Bare tool names and ``Tool(**)`` match tools that carry no path
    (``TodoWrite``, ``mcp__*`` ...). Path tools need a path matching the
    rule's glob.
    """
    parsed = coerce_rule(rule)
    if parsed is None or parsed.is_command_rule:
        return False
    if not _tool_matches(parsed.tool, tool_name):
        return False
    if parsed.payload is None:
        return True
    if tool_name in NO_PATH_TOOLS or tool_name.startswith("mcp__"):
        return parsed.payload.strip() == "**"
    if not path:
        return False
    return match_path(parsed.payload, path, cwd=cwd)

