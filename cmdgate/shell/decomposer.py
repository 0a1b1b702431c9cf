"""Break a shell command line into the simple commands it would run.

Two tiers sit behind one interface. The precise tier understands quoting,
nesting, wrappers (``sh -c``, ``xargs``, ``timeout`` ...), control
structures and substitutions. When it cannot tokenize a window it hands that
window to the lenient tier, which splits naively and never fails. Callers
only see ``iter_commands`` / ``decompose``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Generator, Iterator

import structlog

from cmdgate.shell.lexer import (
    MalformedInput,
    Token,
    find_substitutions,
    is_assignment,
    is_bare_redirection,
    is_redirection,
    lex_simple_command,
    naive_segments,
    naive_words,
    split_segments,
    split_words,
    strip_quotes,
    unquote_span,
)
from cmdgate.shell.models import CONTROL_KEYWORDS, Origin, ParseTier, SimpleCommand

logger = structlog.get_logger()

MAX_DEPTH = 8

# Keywords whose remainder is itself a command (condition or body)
_PREFIX_KEYWORDS = frozenset({"if", "while", "do", "then", "else"})
_BODY_DEPTH = {"do": 1, "then": 1, "done": -1, "fi": -1}

_DURATION_RE = re.compile(r"^\d+(?:\.\d+)?[smhd]?$")

Span = tuple[int, int]
MetaHandler = Callable[[list[Token], int], "Span | None"]


# -- meta-command argument shapes -------------------------------------------


def _unwrap_shell(words: list[Token], idx: int) -> Span | None:
    """``sh -c '<inner>'``, including combined flags such as ``-lc``."""
    i = idx + 1
    while i < len(words):
        word = words[i].text
        if word in ("-o", "+o", "-O", "+O"):
            i += 2
            continue
        if word.startswith("--"):
            i += 1
            continue
        if word.startswith("-") and len(word) > 1:
            if "c" in word[1:]:
                if i + 1 < len(words):
                    return unquote_span(words[i + 1])
                return None
            i += 1
            continue
        if word.startswith("+"):
            i += 1
            continue
        # first operand is a script file, nothing to unwrap
        return None
    return None


def _unwrap_node(words: list[Token], idx: int) -> Span | None:
    for i in range(idx + 1, len(words) - 1):
        if words[i].text in ("-e", "--eval", "-p", "--print"):
            return unquote_span(words[i + 1])
    return None


_XARGS_VALUE_FLAGS = frozenset({"-I", "-n", "-P", "-L", "-l", "-d", "-E", "-e", "-s", "-a"})
_XARGS_VALUE_LONG = frozenset({
    "--replace", "--max-args", "--max-procs", "--max-lines",
    "--delimiter", "--eof", "--max-chars", "--arg-file",
})


def _unwrap_xargs(words: list[Token], idx: int) -> Span | None:
    i = idx + 1
    while i < len(words):
        word = words[i].text
        if word == "--":
            i += 1
            break
        if word in _XARGS_VALUE_FLAGS or word in _XARGS_VALUE_LONG:
            i += 2
            continue
        if word.startswith("-"):
            i += 1
            continue
        break
    if i >= len(words):
        return None
    return words[i].start, words[-1].end


def _unwrap_timeout(words: list[Token], idx: int) -> Span | None:
    i = idx + 1
    while i < len(words):
        word = words[i].text
        if word in ("-s", "--signal", "-k", "--kill-after"):
            i += 2
            continue
        if word.startswith("-"):
            i += 1
            continue
        break
    if i + 1 >= len(words) or not _DURATION_RE.match(strip_quotes(words[i].text)):
        return None
    return words[i + 1].start, words[-1].end


def _unwrap_time(words: list[Token], idx: int) -> Span | None:
    i = idx + 1
    while i < len(words):
        word = words[i].text
        if word in ("-o", "-f", "--output", "--format"):
            i += 2
            continue
        if word.startswith("-"):
            i += 1
            continue
        break
    if i >= len(words):
        return None
    return words[i].start, words[-1].end


def _unwrap_env(words: list[Token], idx: int) -> Span | None:
    i = idx + 1
    while i < len(words):
        word = words[i].text
        if word in ("-S", "--split-string") and i + 1 < len(words):
            return unquote_span(words[i + 1])
        if word in ("-u", "--unset", "-C", "--chdir"):
            i += 2
            continue
        if word.startswith("-"):
            i += 1
            continue
        break
    rest = words[i:]
    if not any(not is_assignment(w.text) for w in rest):
        return None
    # assignments stay with the inner command
    return rest[0].start, words[-1].end


META_HANDLERS: dict[str, MetaHandler] = {
    "sh": _unwrap_shell,
    "bash": _unwrap_shell,
    "zsh": _unwrap_shell,
    "node": _unwrap_node,
    "xargs": _unwrap_xargs,
    "timeout": _unwrap_timeout,
    "time": _unwrap_time,
    "env": _unwrap_env,
}


def _program_index(words: list[Token]) -> int | None:
    """Index of the program word, past assignments and redirections."""
    for i, token in enumerate(words):
        if is_assignment(token.text):
            continue
        if is_redirection(token.text):
            continue
        if i > 0 and is_bare_redirection(words[i - 1].text):
            # target of a detached redirection operator
            continue
        return i
    return None


def _function_body_index(words: list[Token]) -> int | None:
    """Index of the first body word of ``f() { ...`` or ``function f { ...``."""
    texts = [w.text for w in words]
    i = 1 if texts[0] == "function" else 0
    if i >= len(texts):
        return None
    name = texts[i]
    if name.endswith("()"):
        name = name[:-2]
        i += 1
    elif i + 1 < len(texts) and texts[i + 1] == "()":
        i += 2
    elif texts[0] == "function":
        i += 1
    else:
        return None
    if not re.match(r"^[A-Za-z_][\w.:-]*$", name):
        return None
    if i < len(texts) and texts[i] == "{":
        return i + 1
    return None


# -- tiers --------------------------------------------------------------------


class LenientDecomposer:
    """Naive splitter used when precise tokenization is impossible.

    Splits on every ``;``, ``&``, ``|`` and newline, then on whitespace.
    Never raises and never unwraps anything.
    """

    def __init__(self, *, keep_keywords: bool = False) -> None:
        self.keep_keywords = keep_keywords

    def expand(self, text: str, start: int, end: int, origin: Origin) -> Iterator[SimpleCommand]:
        for seg_start, seg_end in naive_segments(text, start, end):
            words = naive_words(text, seg_start, seg_end)
            while words and words[0].text in CONTROL_KEYWORDS:
                if self.keep_keywords:
                    keyword = words[0]
                    yield SimpleCommand(
                        name=keyword.text,
                        source_range=(keyword.start, keyword.end),
                        origin=Origin.CONTROL,
                        raw_text=keyword.text,
                        tier=ParseTier.LENIENT,
                    )
                words = words[1:]
            if not words:
                continue
            command = lex_simple_command(
                text,
                words,
                (words[0].start, seg_end),
                origin=origin,
                tier=ParseTier.LENIENT,
            )
            if command is not None:
                yield command

    def iter_commands(self, text: str) -> Iterator[SimpleCommand]:
        return self.expand(text, 0, len(text), Origin.TOP_LEVEL)


class PreciseDecomposer:
    """Quote-aware decomposer with meta, control and substitution handling.

    Any window that fails to tokenize (unterminated quote, unbalanced
    parenthesis, excessive nesting) is delegated to ``fallback`` so that
    what was already recovered elsewhere in the line is kept.
    """

    def __init__(
        self,
        fallback: LenientDecomposer | None = None,
        *,
        keep_keywords: bool = False,
        max_depth: int = MAX_DEPTH,
    ) -> None:
        self.keep_keywords = keep_keywords
        self.max_depth = max_depth
        self.fallback = fallback or LenientDecomposer(keep_keywords=keep_keywords)

    def iter_commands(self, text: str) -> Iterator[SimpleCommand]:
        return self._expand(text, 0, len(text), Origin.TOP_LEVEL, 0)

    def _expand(self, text: str, start: int, end: int, origin: Origin, depth: int) -> Iterator[SimpleCommand]:
        if depth > self.max_depth:
            logger.debug("decompose_depth_exceeded", depth=depth, window=text[start:end])
            yield from self.fallback.expand(text, start, end, origin)
            return
        try:
            segments = split_segments(text, start, end)
        except MalformedInput as e:
            logger.debug("decompose_fallback", reason=e.reason, position=e.position)
            yield from self.fallback.expand(text, start, end, origin)
            return

        body_depth = 0
        for seg_start, seg_end in segments:
            seg_origin = Origin.CONTROL if body_depth > 0 else origin
            delta = yield from self._expand_segment(text, seg_start, seg_end, seg_origin, depth)
            body_depth = max(body_depth + delta, 0)

    def _substitutions(self, text: str, start: int, end: int, depth: int) -> Iterator[SimpleCommand]:
        for sub_start, sub_end in find_substitutions(text, start, end):
            yield from self._expand(text, sub_start, sub_end, Origin.SUBSTITUTION, depth + 1)

    def _keyword(self, text: str, token: Token) -> SimpleCommand:
        return SimpleCommand(
            name=token.text,
            source_range=(token.start, token.end),
            origin=Origin.CONTROL,
            raw_text=text[token.start:token.end],
        )

    def _expand_segment(
        self, text: str, start: int, end: int, origin: Origin, depth: int
    ) -> Generator[SimpleCommand, None, int]:
        """Emit the commands of one segment; return the change in body depth."""
        try:
            words = split_words(text, start, end)
        except MalformedInput as e:
            logger.debug("decompose_fallback", reason=e.reason, position=e.position)
            yield from self.fallback.expand(text, start, end, origin)
            return 0
        if not words:
            return 0

        first = words[0].text

        # a function body is checked as if it ran in place
        body = _function_body_index(words)
        if body is not None:
            if body < len(words):
                yield from self._expand(text, words[body].start, end, origin, depth)
            return 0

        # { a; b; } and ! pipelines are transparent
        if first in ("{", "!"):
            if len(words) > 1:
                yield from self._expand(text, words[1].start, end, origin, depth)
            return 0
        if first == "}":
            return 0
        if first.startswith("(") and first.endswith(")"):
            yield from self._expand(text, words[0].start + 1, words[0].end - 1, origin, depth + 1)
            return 0

        if first in CONTROL_KEYWORDS:
            delta = _BODY_DEPTH.get(first, 0)
            if first in _PREFIX_KEYWORDS:
                if self.keep_keywords:
                    yield self._keyword(text, words[0])
                if len(words) > 1:
                    yield from self._expand(text, words[1].start, end, Origin.CONTROL, depth)
                return delta
            # for headers, done, fi: nothing executes except substitutions
            yield from self._substitutions(text, start, end, depth)
            if self.keep_keywords:
                command = lex_simple_command(text, words, (start, end), origin=Origin.CONTROL)
                if command is not None:
                    yield command
            return delta

        idx = _program_index(words)
        if idx is not None:
            program = strip_quotes(words[idx].text).rsplit("/", 1)[-1]
            handler = META_HANDLERS.get(program)
            inner = handler(words, idx) if handler else None
            if inner is not None:
                yield from self._substitutions(text, start, words[idx].end, depth)
                if idx > 0 and any(is_assignment(w.text) for w in words[:idx]):
                    # leading assignments apply to everything the wrapper runs
                    command = lex_simple_command(text, words, (start, end), origin=origin)
                    if command is not None:
                        yield command
                yield from self._expand(text, inner[0], inner[1], Origin.META, depth + 1)
                return 0

        yield from self._substitutions(text, start, end, depth)
        command = lex_simple_command(text, words, (start, end), origin=origin)
        if command is not None:
            yield command
        return 0


def iter_commands(text: str, *, keep_keywords: bool = False) -> Iterator[SimpleCommand]:
    """Lazily yield the simple commands of ``text`` in execution order.

    Never raises. Records that had to be recovered by the naive splitter
    carry ``tier == ParseTier.LENIENT``.
    """
    if not text or not text.strip():
        return
    lenient = LenientDecomposer(keep_keywords=keep_keywords)
    precise = PreciseDecomposer(lenient, keep_keywords=keep_keywords)
    emitted = 0
    try:
        for command in precise.iter_commands(text):
            emitted += 1
            yield command
    except Exception as e:
        # records already yielded may be repeated by the naive split
        logger.warning("decompose_failed", error=str(e), emitted=emitted)
        yield from lenient.iter_commands(text)


def decompose(text: str, *, keep_keywords: bool = False) -> list[SimpleCommand]:
    """Return every simple command in ``text``.

    >>> [c.raw_text for c in decompose("echo hello && echo world")]
    ['echo hello', 'echo world']
    """
    return list(iter_commands(text, keep_keywords=keep_keywords))
