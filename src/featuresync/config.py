"""Configuration schema and loading for featuresync.

Resolution order (later wins):
1. Built-in defaults (SyncConfig field defaults)
2. ``[sync]`` table of ``~/.featuresync/config.toml``
3. Environment variables (FEATURESYNC_LOCK_TTL, FEATURESYNC_CLONE_DEPTH,
   FEATURESYNC_DEFAULT_BRANCH)
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError


CONFIG_FILENAME = "config.toml"
USER_CONFIG_DIR = ".featuresync"

# Files that count as test assets for the filtered status view
DEFAULT_FILTER_GLOBS = [
    "features/**/*.feature",
    "**/steps/**/*.ts",
    "**/steps/**/*.js",
    "playwright/**",
]

_ENV_OVERRIDES = {
    "FEATURESYNC_LOCK_TTL": "lock_ttl",
    "FEATURESYNC_CLONE_DEPTH": "clone_depth",
    "FEATURESYNC_DEFAULT_BRANCH": "default_branch",
}


class SyncConfig(BaseModel):
    """Settings for the git sync engine."""

    meta_dir: str = Field(
        default=".app",
        description="Hidden directory (relative to the workspace root) holding metadata and lock",
    )
    lock_ttl: float = Field(
        default=30.0,
        gt=0,
        description="Seconds after which an unrenewed workspace lock is considered stale",
    )
    clone_depth: int = Field(
        default=50,
        ge=1,
        description="History depth fetched on first clone",
    )
    default_branch: str = Field(
        default="main",
        description="Branch used for fresh repositories and detached HEADs",
    )
    remote_name: str = Field(default="origin", description="Name of the tracked remote")
    default_message: str = Field(default="Update via featuresync")
    default_author_name: str = Field(default="featuresync User")
    default_author_email: str = Field(default="featuresync@local")
    filter_globs: List[str] = Field(
        default_factory=lambda: list(DEFAULT_FILTER_GLOBS),
        description="Glob patterns selecting test-asset files for the filtered status",
    )

    @field_validator("meta_dir")
    @classmethod
    def validate_meta_dir(cls, v: str) -> str:
        if not v or Path(v).is_absolute() or ".." in Path(v).parts:
            raise ValueError("meta_dir must be a relative directory inside the workspace")
        return v

    @field_validator("default_branch", "remote_name")
    @classmethod
    def validate_ref_name(cls, v: str) -> str:
        v = v.strip()
        if not v or " " in v or v.startswith("-"):
            raise ValueError(f"invalid git ref name: {v!r}")
        return v


def _get_user_config_path() -> Path:
    return Path.home() / USER_CONFIG_DIR / CONFIG_FILENAME


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _env_overlay() -> Dict[str, Any]:
    overlay: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            overlay[field_name] = raw.strip()
    return overlay


def load_config(config_path: Optional[Path] = None) -> SyncConfig:
    """Load the sync configuration.

    Args:
        config_path: Explicit TOML file (defaults to ~/.featuresync/config.toml)

    Raises:
        ConfigError: If the file is malformed or a value fails validation
    """
    path = config_path if config_path is not None else _get_user_config_path()
    data = _load_toml(path)
    section = data.get("sync", {})
    if not isinstance(section, dict):
        raise ConfigError(f"[sync] in {path} must be a table")

    merged = {**section, **_env_overlay()}
    try:
        return SyncConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid featuresync configuration: {e}")
