"""cmdgate - command authorization engine for coding-agent tool calls."""

__version__ = "0.3.0"
