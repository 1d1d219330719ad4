"""
Configuration loader for SPECLOOP.
Merges defaults with per-repo .opencode/specloop.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError


class ConfigError(Exception):
    """Raised when a config file cannot be read or validated."""
    pass


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class BackendConfig(BaseModel):
    binary: str = "bd"
    stats_lines: int = 10
    timeout: float | None = None


class WorkspaceConfig(BaseModel):
    control_dir: str = ".opencode"
    state_file: str = "openspec-loop.json"
    progress_file: str = "openspec-loop-progress.md"
    spec_root: str = "openspec/changes"


class LoopConfig(BaseModel):
    service: str = "openspec-loop"
    default_max_iterations: int = 0
    verify_commands: list[str] = Field(default_factory=list)


class NotificationConfig(BaseModel):
    enabled: bool = True
    title: str = "OpenCode"
    message: str = "All Beads epics complete!"


class SpecLoopConfig(BaseModel):
    backend: BackendConfig = Field(default_factory=BackendConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def state_path(self, workdir: Path) -> Path:
        return workdir / self.workspace.control_dir / self.workspace.state_file

    def progress_path(self, workdir: Path) -> Path:
        return workdir / self.workspace.control_dir / self.workspace.progress_file


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

REPO_CONFIG_NAME = "specloop.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")
    return data


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    binary = os.environ.get("SPECLOOP_BD_BIN")
    if binary:
        overrides.setdefault("backend", {})["binary"] = binary
    max_iterations = os.environ.get("SPECLOOP_MAX_ITERATIONS")
    if max_iterations:
        try:
            overrides.setdefault("loop", {})["default_max_iterations"] = int(max_iterations)
        except ValueError:
            logger.warning(f"[CONFIG] Ignoring non-integer SPECLOOP_MAX_ITERATIONS={max_iterations!r}")
    return overrides


def load_config(workdir: Path | None = None) -> SpecLoopConfig:
    """
    Load config by merging:
      1. Built-in defaults (specloop/config.yaml)
      2. Repo-level overrides (<workdir>/<control_dir>/specloop.yaml)
      3. Environment variable overrides
    """
    # 1. Built-in defaults
    base = _read_yaml(_DEFAULT_CONFIG_PATH)

    # 2. Repo overrides
    if workdir:
        control_dir = base.get("workspace", {}).get("control_dir", ".opencode")
        repo_config = workdir / control_dir / REPO_CONFIG_NAME
        if repo_config.exists():
            base = _deep_merge(base, _read_yaml(repo_config))
            logger.debug(f"[CONFIG] Merged overrides from {repo_config}")

    # 3. Env overrides
    base = _deep_merge(base, _env_overrides())

    try:
        return SpecLoopConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
