"""Quote-aware scanning primitives for shell command lines.

Every function works on a window ``[start, end)`` of the ORIGINAL text and
reports spans into that same text, so records recovered from nested
unwrapping still point at the caller's input. Nothing here evaluates or
expands anything; quoted words are kept verbatim.
"""

from __future__ import annotations

import re
from typing import NamedTuple

from cmdgate.shell.models import Origin, ParseTier, SimpleCommand

ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\[[^\]]*\])?\+?=")

# Operator part of a redirection token: 2>, >>, &>, >&, <<<, 2>&1 ...
REDIRECT_RE = re.compile(r"^(?:\d+|&)?(?:>>|>&|>\||<<<|<<-?|<>|<&|>|<)")

# A redirection operator that still needs its target as the next word
_BARE_REDIRECT_RE = re.compile(r"^(?:\d+|&)?(?:>>|>\||<<<|<<-?|<>|>|<|>&|<&)$")

_REDIRECT_OPS = (">>", ">&", ">|", "<<<", "<<-", "<<", "<>", "<&", ">", "<")

_WORD_BREAK = " \t\n;&|("


class MalformedInput(ValueError):
    """Raised when the precise scanner cannot tokenize a window."""

    def __init__(self, reason: str, position: int) -> None:
        self.reason = reason
        self.position = position
        super().__init__(f"{reason} at offset {position}")


class Token(NamedTuple):
    """A word and its span in the original text."""

    text: str
    start: int
    end: int


def is_assignment(word: str) -> bool:
    """Whether a word is a ``NAME=value`` assignment."""
    return bool(ASSIGNMENT_RE.match(word))


def is_redirection(word: str) -> bool:
    """Whether a word starts with a redirection operator."""
    return bool(REDIRECT_RE.match(word))


def is_bare_redirection(word: str) -> bool:
    """Whether a word is a redirection operator still missing its target."""
    return bool(_BARE_REDIRECT_RE.match(word))


def strip_quotes(word: str) -> str:
    """Remove quoting characters from a word (no expansion)."""
    if word.startswith("$'") and word.endswith("'") and len(word) >= 3:
        word = word[2:-1]
    return re.sub(r"""\\(.)|['"]""", lambda m: m.group(1) or "", word)


def unquote_span(token: Token) -> tuple[int, int]:
    """Span of a token's content without its surrounding quotes."""
    text = token.text
    if len(text) >= 3 and text.startswith("$'") and text.endswith("'"):
        return token.start + 2, token.end - 1
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return token.start + 1, token.end - 1
    return token.start, token.end


def _skip(text: str, i: int, end: int, found: list[tuple[int, int]] | None = None) -> int:
    """Return the index just past the quoted or nested construct at ``i``.

    ``found`` collects the inner spans of substitutions met directly inside
    double quotes or ``${...}``.
    """
    c = text[i]
    if c == "'":
        j = text.find("'", i + 1, end)
        if j == -1:
            raise MalformedInput("unterminated single quote", i)
        return j + 1

    if c == "$" and text.startswith("$'", i):
        k = i + 2
        while k < end:
            if text[k] == "\\":
                k += 2
                continue
            if text[k] == "'":
                return k + 1
            k += 1
        raise MalformedInput("unterminated ANSI-C quote", i)

    if c == '"':
        k = i + 1
        while k < end:
            ch = text[k]
            if ch == "\\":
                k += 2
            elif ch == '"':
                return k + 1
            elif ch == "`" or text.startswith(("$(", "${"), k):
                j = _skip(text, k, end)
                if found is not None and not text.startswith(("$((", "${"), k):
                    found.append((k + 1, j - 1) if ch == "`" else (k + 2, j - 1))
                k = j
            else:
                k += 1
        raise MalformedInput("unterminated double quote", i)

    if c == "`":
        k = i + 1
        while k < end:
            if text[k] == "\\":
                k += 2
            elif text[k] == "`":
                return k + 1
            else:
                k += 1
        raise MalformedInput("unterminated backtick", i)

    if c == "$" and text.startswith("${", i):
        k = i + 2
        while k < end:
            ch = text[k]
            if ch == "\\":
                k += 2
            elif ch == "}":
                return k + 1
            elif ch in "'\"`" or text.startswith(("$(", "${"), k):
                k = _skip(text, k, end, found)
            else:
                k += 1
        raise MalformedInput("unterminated parameter expansion", i)

    # $( <( >( and bare ( groups
    k = i + (1 if c == "(" else 2)
    while k < end:
        ch = text[k]
        if ch == "\\":
            k += 2
        elif ch == ")":
            return k + 1
        elif ch in "'\"`(" or text.startswith(("$(", "${", "$'"), k):
            k = _skip(text, k, end)
        else:
            k += 1
    raise MalformedInput("unbalanced parenthesis", i)


def _opens_construct(text: str, i: int) -> bool:
    c = text[i]
    if c in "'\"`(":
        return True
    return text.startswith(("$(", "${", "$'", "<(", ">("), i)


def _at_word_start(text: str, i: int, start: int) -> bool:
    return i == start or text[i - 1] in _WORD_BREAK


def _read_heredoc_delimiter(text: str, i: int, end: int) -> tuple[str, int]:
    """Read the delimiter word after ``<<`` / ``<<-`` starting at ``i``."""
    while i < end and text[i] in " \t":
        i += 1
    j = i
    while j < end and text[j] not in " \t\n;&|<>()":
        if text[j] in "'\"":
            close = text.find(text[j], j + 1, end)
            j = end if close == -1 else close + 1
        else:
            j += 1
    return strip_quotes(text[i:j]), j


def _skip_heredoc_bodies(text: str, i: int, end: int, delimiters: list[str]) -> int:
    """Skip heredoc bodies starting at line index ``i``; return the resume index."""
    for delimiter in delimiters:
        while i < end:
            nl = text.find("\n", i, end)
            line_end = end if nl == -1 else nl
            line = text[i:line_end]
            i = end if nl == -1 else nl + 1
            if line.strip() == delimiter:
                break
    return i


def split_segments(text: str, start: int = 0, end: int | None = None) -> list[tuple[int, int]]:
    """Split a window on ``;``, ``&&``, ``||``, ``|``, ``|&``, ``&`` and newlines.

    Operators inside quotes, substitutions and subshells are not split
    points, and neither are the ``&``/``|`` characters of redirections
    (``2>&1``, ``&>``, ``>|``). Empty fragments, such as the one left by a
    dangling ``&&``, are dropped.

    Raises:
        MalformedInput: On unterminated quotes or unbalanced nesting.
    """
    end = len(text) if end is None else end
    segments: list[tuple[int, int]] = []
    pending_heredocs: list[str] = []
    seg_start = start
    i = start

    def close(seg_end: int) -> None:
        fragment = text[seg_start:seg_end]
        stripped = fragment.strip()
        if stripped:
            lead = len(fragment) - len(fragment.lstrip())
            segments.append((seg_start + lead, seg_start + lead + len(stripped)))

    while i < end:
        c = text[i]
        nxt = text[i + 1] if i + 1 < end else ""
        prev = text[i - 1] if i > start else ""

        if c == "\\":
            i += 2
            continue
        if c == ")":
            raise MalformedInput("unbalanced parenthesis", i)
        if _opens_construct(text, i):
            i = _skip(text, i, end)
            continue
        if c == "#" and _at_word_start(text, i, start):
            nl = text.find("\n", i, end)
            i = end if nl == -1 else nl
            continue
        if c == "<" and text.startswith("<<", i) and not text.startswith("<<<", i):
            delimiter, i = _read_heredoc_delimiter(text, i + (3 if text.startswith("<<-", i) else 2), end)
            if delimiter:
                pending_heredocs.append(delimiter)
            continue

        width = 0
        if c in ";\n":
            width = 1
        elif c == "&":
            if nxt == "&":
                width = 2
            elif nxt != ">" and prev not in "<>":
                width = 1
        elif c == "|":
            if nxt in "|&":
                width = 2
            elif prev != ">":
                width = 1

        if width:
            close(i)
            i += width
            if c == "\n" and pending_heredocs:
                i = _skip_heredoc_bodies(text, i, end, pending_heredocs)
                pending_heredocs.clear()
            seg_start = i
            continue
        i += 1

    close(end)
    return segments


def split_words(text: str, start: int = 0, end: int | None = None) -> list[Token]:
    """Split a window into words, keeping quotes and substitutions intact.

    Unquoted redirection operators start a new word, so ``echo hi>out``
    yields ``echo``, ``hi``, ``>out``. A descriptor prefix (``2>``) or a
    descriptor duplication (``2>&1``) stays in the same word.

    Raises:
        MalformedInput: On unterminated quotes or unbalanced nesting.
    """
    end = len(text) if end is None else end
    tokens: list[Token] = []
    word_start: int | None = None
    i = start

    def flush(word_end: int) -> None:
        nonlocal word_start
        if word_start is not None and word_end > word_start:
            tokens.append(Token(text[word_start:word_end], word_start, word_end))
        word_start = None

    while i < end:
        c = text[i]
        if c in " \t\n":
            flush(i)
            i += 1
            continue
        if c == "#" and word_start is None and _at_word_start(text, i, start):
            nl = text.find("\n", i, end)
            i = end if nl == -1 else nl
            continue
        if c in "<>" and not text.startswith(("<(", ">("), i):
            current = text[word_start:i] if word_start is not None else ""
            if current and not (current.isdigit() or current == "&"):
                flush(i)
            if word_start is None:
                word_start = i
            op = next(o for o in _REDIRECT_OPS if text.startswith(o, i))
            i += len(op)
            if op in (">&", "<&"):
                j = i
                while j < end and (text[j].isdigit() or text[j] == "-"):
                    j += 1
                if j > i:
                    i = j
                    flush(i)
            continue
        if word_start is None:
            word_start = i
        if c == "\\":
            i += 2
        elif _opens_construct(text, i):
            i = _skip(text, i, end)
        else:
            i += 1

    flush(min(i, end))
    return tokens


def find_substitutions(text: str, start: int = 0, end: int | None = None) -> list[tuple[int, int]]:
    """Inner spans of the top-level command substitutions in a window.

    Covers ``$(...)``, backticks and process substitutions, including those
    inside double quotes. Single-quoted text is literal. Arithmetic
    ``$((...))`` is not a command. Nested substitutions are left for the
    caller to find when it recurses into an inner span.

    Raises:
        MalformedInput: On unterminated quotes or unbalanced nesting.
    """
    end = len(text) if end is None else end
    found: list[tuple[int, int]] = []
    i = start
    while i < end:
        c = text[i]
        if c == "\\":
            i += 2
            continue
        if text.startswith("$((", i):
            i = _skip(text, i, end)
            continue
        if text.startswith(("$(", "<(", ">("), i):
            j = _skip(text, i, end)
            found.append((i + 2, j - 1))
            i = j
            continue
        if c == "`":
            j = _skip(text, i, end)
            found.append((i + 1, j - 1))
            i = j
            continue
        if c == '"' or text.startswith("${", i):
            i = _skip(text, i, end, found)
            continue
        if _opens_construct(text, i):
            i = _skip(text, i, end)
            continue
        i += 1
    return [(s, e) for s, e in found if text[s:e].strip()]


def naive_segments(text: str, start: int = 0, end: int | None = None) -> list[tuple[int, int]]:
    """Split on any run of ``;``, ``&``, ``|`` or newlines, ignoring quotes."""
    end = len(text) if end is None else end
    spans: list[tuple[int, int]] = []
    for match in re.finditer(r"[^;&|\n]+", text[start:end]):
        fragment = match.group()
        stripped = fragment.strip()
        if stripped:
            lead = len(fragment) - len(fragment.lstrip())
            s = start + match.start() + lead
            spans.append((s, s + len(stripped)))
    return spans


def naive_words(text: str, start: int = 0, end: int | None = None) -> list[Token]:
    """Whitespace split of a window."""
    end = len(text) if end is None else end
    return [
        Token(m.group(), start + m.start(), start + m.end())
        for m in re.finditer(r"\S+", text[start:end])
    ]


def lex_simple_command(
    text: str,
    tokens: list[Token],
    span: tuple[int, int],
    *,
    origin: Origin = Origin.TOP_LEVEL,
    tier: ParseTier = ParseTier.PRECISE,
) -> SimpleCommand | None:
    """Build a SimpleCommand from the words of one fragment.

    Leading ``NAME=value`` words are assignments, redirection words are
    collected separately (a bare operator absorbs the following word as
    its target), the first remaining word is the program name.
    """
    start, end = span
    raw = text[start:end]
    if not raw.strip() or not tokens:
        return None

    name: str | None = None
    args: list[str] = []
    assignments: list[str] = []
    redirections: list[str] = []

    i = 0
    while i < len(tokens):
        word = tokens[i].text
        if is_redirection(word):
            following = tokens[i + 1].text if i + 1 < len(tokens) else None
            if is_bare_redirection(word) and following is not None and not is_redirection(following):
                redirections.append(word + following)
                i += 2
                continue
            redirections.append(word)
        elif name is None and is_assignment(word):
            assignments.append(word)
        elif name is None:
            name = word
        else:
            args.append(word)
        i += 1

    return SimpleCommand(
        name=name,
        args=tuple(args),
        assignments=tuple(assignments),
        redirections=tuple(redirections),
        source_range=(start, end),
        origin=origin,
        raw_text=raw,
        tier=tier,
    )
