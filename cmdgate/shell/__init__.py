"""Shell command-line decomposition."""

from cmdgate.shell.decomposer import decompose, iter_commands
from cmdgate.shell.lexer import MalformedInput
from cmdgate.shell.models import CONTROL_KEYWORDS, Origin, ParseTier, SimpleCommand

__all__ = [
    "CONTROL_KEYWORDS",
    "MalformedInput",
    "Origin",
    "ParseTier",
    "SimpleCommand",
    "decompose",
    "iter_commands",
]
