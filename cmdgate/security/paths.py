"""Path and pattern normalization shared by the matcher and the miner.

Everything here is lexical: no filesystem access, no symlink resolution.
"""

from __future__ import annotations

import os
import posixpath


def expand_tilde(path: str, home: str | None = None) -> str:
    """Expand a leading ``~`` or ``~/`` to the home directory."""
    if path == "~" or path.startswith("~/"):
        home = home or os.path.expanduser("~")
        if path == "~":
            return home
        return home.rstrip("/") + path[1:]
    return path


def _collapse(path: str) -> str:
    normalized = posixpath.normpath(path)
    # POSIX keeps a leading '//' as implementation defined; treat it as '/'
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def relative_to(path: str, base: str) -> str | None:
    """Return ``path`` relative to ``base`` when it is inside it, else None."""
    base = _collapse(base)
    if path == base:
        return "."
    prefix = base if base.endswith("/") else base + "/"
    if path.startswith(prefix):
        return path[len(prefix):]
    return None


def has_traversal(path: str) -> bool:
    """Whether a path climbs out through a parent-directory segment."""
    return path == ".." or path.startswith("../") or "/../" in path or path.endswith("/..")


def normalize_path(path: str, cwd: str | None = None, *, home: str | None = None) -> str:
    """Normalize a file path for matching.

    Expands ``~``, collapses ``.`` segments and redundant separators, and
    rewrites an absolute path inside ``cwd`` as a relative one. Applying it
    twice gives the same result as applying it once.

    Args:
        path: The path as given by the tool call.
        cwd: Working directory of the call; absolute paths below it become
            relative. ``None`` leaves absolute paths alone.
        home: Home directory override for tilde expansion.

    Returns:
        The normalized path, or ``""`` for an empty path.
    """
    if not path:
        return ""
    result = _collapse(expand_tilde(path, home))
    if result == "~" or result.startswith("~/"):
        # a directory literally named '~' ("./~/x"); keep it from expanding later
        result = "./" + result
    if cwd and result.startswith("/"):
        relative = relative_to(result, _collapse(expand_tilde(cwd, home)))
        if relative is not None:
            result = relative
    return result


def normalize_pattern(pattern: str, cwd: str | None = None, *, home: str | None = None) -> str:
    """Normalize a gitignore-style pattern.

    ``./**`` is kept as is. ``./X`` becomes the root-anchored ``/X``. ``~``
    is expanded, and an absolute pattern inside ``cwd`` is re-anchored at the
    root of ``cwd``. A leading ``!`` is preserved.
    """
    if pattern.startswith("!"):
        return "!" + normalize_pattern(pattern[1:], cwd, home=home)
    if pattern == "./**":
        return pattern
    if pattern.startswith("./"):
        return "/" + pattern[2:]
    pattern = expand_tilde(pattern, home)
    if cwd and pattern.startswith("/"):
        base = _collapse(expand_tilde(cwd, home))
        trailing = "/" if pattern.endswith("/") and pattern != "/" else ""
        relative = relative_to(_collapse(pattern) if "*" not in pattern else pattern.rstrip("/"), base)
        if relative == "**":
            return "./**"
        if relative is not None and relative != ".":
            return "/" + relative + trailing
    return pattern
