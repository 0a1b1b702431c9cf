"""Typed tool-call inputs.

Hook payloads carry ``tool_name`` plus a free-form ``tool_input`` object.
``parse_tool_call`` turns them into one variant of a closed union so the
engine dispatches on type instead of probing dictionaries.
"""

from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

BASH_TOOL = "Bash"
FILE_TOOLS: frozenset[str] = frozenset({"Edit", "MultiEdit", "Write", "Read", "NotebookEdit", "NotebookRead"})
SEARCH_TOOLS: frozenset[str] = frozenset({"Grep", "Glob", "Search"})

_PATH_KEYS = ("file_path", "path", "notebook_path")


class _ToolCallBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    tool_name: str = Field(min_length=1)

    @property
    def subject(self) -> str:
        """The command or path this call is about, for logs and prompts."""
        return ""


class BashCall(_ToolCallBase):
    """Bash tool: a command line."""

    command: str
    description: str | None = None
    timeout: int | None = None
    run_in_background: bool = False

    @property
    def subject(self) -> str:
        return self.command


class FileToolCall(_ToolCallBase):
    """Edit, MultiEdit, Write, Read and notebook tools: one target file."""

    file_path: str = Field(min_length=1)

    @property
    def subject(self) -> str:
        return self.file_path


class SearchToolCall(_ToolCallBase):
    """Grep, Glob and Search: an optional search root."""

    path: str | None = None
    pattern: str | None = None

    @property
    def effective_path(self) -> str | None:
        # Grep without a path searches the whole working tree
        if self.path:
            return self.path
        return "**" if self.tool_name == "Grep" else None

    @property
    def subject(self) -> str:
        return self.path or self.pattern or ""


class OpaqueToolCall(_ToolCallBase):
    """Any other tool, including ``mcp__*`` tools."""

    tool_input: dict[str, Any] = Field(default_factory=dict)

    @property
    def path(self) -> str | None:
        """Best-effort path from well-known input keys."""
        for key in _PATH_KEYS:
            value = self.tool_input.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    @property
    def is_mcp(self) -> bool:
        return self.tool_name.startswith("mcp__")

    @property
    def subject(self) -> str:
        return self.path or ""


ToolCall = Union[BashCall, FileToolCall, SearchToolCall, OpaqueToolCall]


def parse_tool_call(tool_name: str, tool_input: dict[str, Any] | None) -> ToolCall:
    """Build the typed variant for a tool call.

    Raises:
        pydantic.ValidationError: If a known tool's input lacks its
            required fields (a Bash call without ``command``, an Edit
            without ``file_path``).
    """
    data = dict(tool_input or {})
    if tool_name == BASH_TOOL:
        return BashCall.model_validate({**data, "tool_name": tool_name})
    if tool_name in FILE_TOOLS:
        if "file_path" not in data and "notebook_path" in data:
            data["file_path"] = data["notebook_path"]
        return FileToolCall.model_validate({**data, "tool_name": tool_name})
    if tool_name in SEARCH_TOOLS:
        return SearchToolCall.model_validate({**data, "tool_name": tool_name})
    return OpaqueToolCall(tool_name=tool_name, tool_input=data)
