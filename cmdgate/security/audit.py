"""Structured JSON decision log using structlog.

Every authorization decision is appended to a JSONL file. The rule miner
reads these files back, so the record shape is a contract:

    {"tool": ..., "decision": ..., "reason": ..., "raw_command_or_path": ...,
     "session_id": ..., "cwd": ..., "event": "decision", "level": "info",
     "timestamp": ...}

When the log grows past ``max_bytes`` it is renamed to
``<name>.<YYYY-MM-DDTHH-MM-SS>`` and only the newest ``backups`` rotated
files are kept.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

ROTATED_SUFFIX_FORMAT = "%Y-%m-%dT%H-%M-%S"


class AuditLogger:
    """Append-only JSONL sink for authorization decisions."""

    def __init__(self, log_path: str, max_bytes: int = 5 * 1024 * 1024, backups: int = 5) -> None:
        """Initialize the audit logger.

        Args:
            log_path: Path to the JSONL decision log. ``~`` is expanded.
            max_bytes: Size that triggers rotation before opening.
            backups: Number of rotated files to keep.
        """
        self._log_path = Path(log_path).expanduser()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._max_bytes = max_bytes
        self._backups = backups
        self._rotate_if_needed()
        self._file = open(self._log_path, "a", buffering=1)  # noqa: SIM115

        self._logger = structlog.wrap_logger(
            structlog.PrintLogger(file=self._file),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(),
            ],
            # decisions are recorded whatever the console log level is
            wrapper_class=structlog.make_filtering_bound_logger(0),
        )

    @property
    def path(self) -> Path:
        return self._log_path

    def log_decision(
        self,
        tool: str,
        decision: Enum | str,
        reason: str,
        raw_command_or_path: str | None,
        *,
        session_id: str | None = None,
        cwd: str | None = None,
    ) -> None:
        """Log one authorization decision."""
        extra: dict[str, Any] = {}
        if session_id:
            extra["session_id"] = session_id
        if cwd:
            extra["cwd"] = cwd
        self._logger.info(
            "decision",
            tool=tool,
            decision=decision.value if isinstance(decision, Enum) else decision,
            reason=_truncate(reason),
            raw_command_or_path=_truncate(raw_command_or_path or ""),
            **extra,
        )

    def log_error(self, tool: str | None, error: str, *, session_id: str | None = None) -> None:
        """Log an internal failure while deciding."""
        extra = {"session_id": session_id} if session_id else {}
        self._logger.error("decision_error", tool=tool or "", error=_truncate(error), **extra)

    def close(self) -> None:
        """Close the audit log file."""
        self._file.close()

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _rotate_if_needed(self) -> None:
        try:
            if not self._log_path.exists() or self._log_path.stat().st_size < self._max_bytes:
                return
            stamp = datetime.now(timezone.utc).strftime(ROTATED_SUFFIX_FORMAT)
            backup = self._log_path.with_name(f"{self._log_path.name}.{stamp}")
            self._log_path.rename(backup)
            logger.info("audit_log_rotated", backup=str(backup))
            for old in rotated_files(self._log_path)[self._backups:]:
                old.unlink()
        except OSError as e:
            # rotation is best effort; appending still works
            logger.warning("audit_rotation_failed", path=str(self._log_path), error=str(e))


def rotated_files(log_path: Path) -> list[Path]:
    """Rotated siblings of a log file, newest first."""
    pattern = f"{log_path.name}.*"
    return sorted(log_path.parent.glob(pattern), key=lambda p: p.name, reverse=True)


def _truncate(value: str, max_len: int = 2000) -> str:
    """Truncate long strings to prevent log bloat."""
    if len(value) > max_len:
        return value[:max_len] + f"... (truncated, {len(value)} total)"
    return value
