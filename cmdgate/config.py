"""Configuration loading and validation using Pydantic models.

Gate behaviour comes from ``<config_dir>/gate.yaml``. Permission rules are
merged from the agent settings files (global and repository) plus
``<config_dir>/permissions.yaml``. Rule sources that cannot be read are
skipped with a warning; the resulting empty rule lists push decisions
towards ``ask``.
"""

from __future__ import annotations

import json
import os
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = structlog.get_logger()

DEFAULT_CONFIG_DIR = "./config"
CONFIG_ENV = "CMDGATE_CONFIG"
LOG_LEVEL_ENV = "CMDGATE_LOG_LEVEL"


class ApprovalMode(str, Enum):
    """How ``ask`` results are resolved when a human may be present."""

    INTERACTIVE = "interactive"
    AUTO_DENY = "auto_deny"


class MinerConfig(BaseModel):
    """Rule miner thresholds."""

    max_entries: int = Field(default=500, ge=1)
    min_frequency: int = Field(default=2, ge=1)
    proposals_path: str = "./rule-proposals.yaml"


class GateConfig(BaseModel):
    """Top-level gate configuration loaded from gate.yaml."""

    audit_log_path: str = "~/.claude/logs/decisions.jsonl"
    audit_max_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    audit_backups: int = Field(default=5, ge=0, le=100)
    approval_mode: ApprovalMode = ApprovalMode.INTERACTIVE
    git_timeout: float = Field(default=2.0, gt=0, le=30)
    include_global_settings: bool = True
    settings_files: list[str] = Field(default_factory=list)
    passthrough_tools: list[str] = Field(
        default_factory=lambda: ["ExitPlanMode", "Glob", "Grep", "Search", "WebFetch", "WebSearch"]
    )
    log_level: str = "WARNING"
    miner: MinerConfig = Field(default_factory=MinerConfig)

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        """Accept lower-case level names."""
        return v.upper()


class PermissionRules(BaseModel):
    """``allow`` and ``deny`` rule strings from one source, or merged."""

    model_config = ConfigDict(extra="ignore")

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)

    @field_validator("allow", "deny", mode="before")
    @classmethod
    def drop_blank(cls, v: Any) -> list[str]:
        """Keep non-empty strings only."""
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("expected a list of rule strings")
        return [r.strip() for r in v if isinstance(r, str) and r.strip()]

    def merged(self, other: PermissionRules) -> PermissionRules:
        """Concatenate two rule sets, keeping the first occurrence of each rule."""
        return PermissionRules(
            allow=list(dict.fromkeys([*self.allow, *other.allow])),
            deny=list(dict.fromkeys([*self.deny, *other.deny])),
        )


class ConfigurationUnavailable(Exception):
    """Raised when a rule source exists but cannot be read or parsed."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file, returning an empty dict if missing."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def resolve_config_dir(config_dir: str | Path | None = None) -> Path:
    """Explicit directory, else ``CMDGATE_CONFIG``, else ``./config``."""
    return Path(config_dir or os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_DIR))


def load_gate_config(config_dir: str | Path) -> GateConfig:
    """Load gate configuration from config_dir/gate.yaml.

    ``CMDGATE_LOG_LEVEL`` overrides the file's ``log_level``.
    """
    data = _load_yaml(Path(config_dir) / "gate.yaml")
    env_level = os.environ.get(LOG_LEVEL_ENV)
    if env_level:
        data["log_level"] = env_level
    return GateConfig(**data)


def load_permissions_file(config_dir: str | Path) -> PermissionRules:
    """Load rules from config_dir/permissions.yaml.

    Raises:
        ConfigurationUnavailable: If the file is not valid YAML or does not
            have the expected shape.
    """
    path = Path(config_dir) / "permissions.yaml"
    try:
        data = _load_yaml(path)
        return PermissionRules(**data)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        raise ConfigurationUnavailable(str(path), str(e)) from e


def load_settings_file(path: Path) -> PermissionRules:
    """Read ``permissions.allow/deny`` from an agent settings JSON file.

    A missing file is not an error and yields no rules.

    Raises:
        ConfigurationUnavailable: If the file exists but cannot be read,
            is not JSON, or has a malformed ``permissions`` block.
    """
    if not path.exists():
        return PermissionRules()
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationUnavailable(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigurationUnavailable(str(path), "settings root is not an object")
    permissions = data.get("permissions") or {}
    try:
        return PermissionRules(**permissions) if isinstance(permissions, dict) else PermissionRules()
    except ValidationError as e:
        raise ConfigurationUnavailable(str(path), str(e)) from e


def find_repo_root(cwd: str | Path, timeout: float = 2.0) -> Path | None:
    """Return the git top-level directory for cwd, or None.

    Git failures and timeouts are logged and treated as "not a repository".
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning("git_root_timeout", cwd=str(cwd), timeout=timeout)
        return None
    except OSError as e:
        logger.warning("git_root_unavailable", cwd=str(cwd), error=str(e))
        return None
    if result.returncode != 0:
        return None
    root = result.stdout.strip()
    return Path(root) if root else None


def settings_sources(
    cwd: str | Path,
    config: GateConfig,
    *,
    home: str | Path | None = None,
) -> list[Path]:
    """Settings JSON files consulted for cwd, in merge order."""
    sources: list[Path] = []
    if config.include_global_settings:
        home_dir = Path(home) if home else Path.home()
        sources.append(home_dir / ".claude" / "settings.json")
    root = find_repo_root(cwd, timeout=config.git_timeout)
    if root is not None:
        sources.append(root / ".claude" / "settings.json")
        sources.append(root / ".claude" / "settings.local.json")
    sources.extend(Path(p).expanduser() for p in config.settings_files)
    return sources


def load_rule_lists(
    cwd: str | Path,
    config: GateConfig,
    config_dir: str | Path | None = None,
    *,
    home: str | Path | None = None,
) -> PermissionRules:
    """Merge the rule lists of every available source.

    Unreadable sources are skipped with a ``settings_unavailable`` warning.
    """
    rules = PermissionRules()
    for path in settings_sources(cwd, config, home=home):
        try:
            rules = rules.merged(load_settings_file(path))
        except ConfigurationUnavailable as e:
            logger.warning("settings_unavailable", source=e.source, reason=e.reason)

    if config_dir is not None:
        try:
            rules = rules.merged(load_permissions_file(config_dir))
        except ConfigurationUnavailable as e:
            logger.warning("settings_unavailable", source=e.source, reason=e.reason)

    logger.debug("rules_loaded", allow=len(rules.allow), deny=len(rules.deny))
    return rules


def load_all_config(config_dir: str | Path) -> tuple[GateConfig, PermissionRules]:
    """Load gate.yaml and permissions.yaml from the given directory.

    Args:
        config_dir: Path to the configuration directory.

    Returns:
        Tuple of (GateConfig, PermissionRules).

    Raises:
        FileNotFoundError: If config_dir does not exist.
        pydantic.ValidationError: If gate.yaml has invalid content.
        ConfigurationUnavailable: If permissions.yaml cannot be parsed.
    """
    config_path = Path(config_dir)
    if not config_path.is_dir():
        raise FileNotFoundError(f"Configuration directory not found: {config_path}")

    gate_cfg = load_gate_config(config_path)
    permissions = load_permissions_file(config_path)

    return gate_cfg, permissions
