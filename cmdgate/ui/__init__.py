"""Terminal rendering for the cmdgate CLI."""

from __future__ import annotations

from cmdgate.ui.terminal import TerminalUI

__all__ = ["TerminalUI"]
