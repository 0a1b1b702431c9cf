"""Shared fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """The CLI configures structlog globally; undo it after each test."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def repo(tmp_path) -> str:
    """A working directory with a small source tree."""
    (tmp_path / "src" / "components").mkdir(parents=True)
    (tmp_path / "src" / "app.ts").write_text("const a = 1;\n")
    (tmp_path / "src" / "components" / "Button.tsx").write_text("export {};\n")
    (tmp_path / "config.json").write_text("{}\n")
    return str(tmp_path)


@pytest.fixture
def no_repo(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pretend the working directory is not inside a git repository."""
    monkeypatch.setattr("cmdgate.config.find_repo_root", lambda cwd, timeout=2.0: None)
