"""Records produced by the command decomposer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# Shell keywords that carry no security meaning on their own
CONTROL_KEYWORDS: frozenset[str] = frozenset({
    "for",
    "do",
    "done",
    "if",
    "then",
    "else",
    "fi",
    "while",
})


class Origin(str, Enum):
    """Where in the command line a SimpleCommand was recovered from."""

    TOP_LEVEL = "top_level"
    META = "meta"
    CONTROL = "control"
    SUBSTITUTION = "substitution"


class ParseTier(str, Enum):
    """Which decomposer tier produced a record."""

    PRECISE = "precise"
    LENIENT = "lenient"


@dataclass(frozen=True)
class SimpleCommand:
    """One executable unit extracted from a command line.

    ``source_range`` always indexes into the text passed to the top-level
    decompose call, and ``raw_text`` is exactly that slice of it.
    """

    name: str | None
    args: tuple[str, ...] = ()
    assignments: tuple[str, ...] = ()
    redirections: tuple[str, ...] = ()
    source_range: tuple[int, int] = (0, 0)
    origin: Origin = Origin.TOP_LEVEL
    raw_text: str = ""
    tier: ParseTier = field(default=ParseTier.PRECISE, compare=False)

    @property
    def is_keyword(self) -> bool:
        """Whether this record is a bare control-structure keyword."""
        return self.name in CONTROL_KEYWORDS

    @property
    def words(self) -> tuple[str, ...]:
        """Program name followed by its arguments."""
        if self.name is None:
            return self.args
        return (self.name, *self.args)

    def __str__(self) -> str:
        return self.raw_text
