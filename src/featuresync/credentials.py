"""Credential resolution for HTTPS git transport.

The engine receives one AuthProvider at construction and asks it for a
credential pair before every network call. Tokens are opaque strings; the
provider decides how they map onto HTTP basic auth.

Token precedence for GitHubTokenAuthProvider when no explicit token is
passed:
1. FEATURESYNC_GITHUB_TOKEN
2. GITHUB_TOKEN
3. GH_TOKEN
4. ``[github] token`` in ~/.featuresync/credentials.toml
"""

from __future__ import annotations

import os
import tomllib
import warnings
from pathlib import Path
from typing import NamedTuple, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError


CREDENTIALS_FILENAME = "credentials.toml"
USER_CONFIG_DIR = ".featuresync"

TOKEN_ENV_VARS = ("FEATURESYNC_GITHUB_TOKEN", "GITHUB_TOKEN", "GH_TOKEN")


class BasicAuth(NamedTuple):
    username: str
    password: str


class AuthProvider(Protocol):
    def credentials(self, token: Optional[str] = None) -> Optional[BasicAuth]:
        """Return the credential pair for a network call, or None for anonymous access."""
        ...


class GitHubCredentials(BaseModel):
    """GitHub authentication credentials."""

    token: str = Field(default="", description="GitHub personal access token")


class Credentials(BaseModel):
    github: GitHubCredentials = Field(default_factory=GitHubCredentials)


def _get_user_credentials_path() -> Path:
    return Path.home() / USER_CONFIG_DIR / CREDENTIALS_FILENAME


def load_credentials(path: Optional[Path] = None) -> Credentials:
    """Load credentials from TOML; missing or invalid files yield empty credentials."""
    path = path if path is not None else _get_user_credentials_path()
    if not path.exists():
        return Credentials()
    try:
        with open(path, "rb") as f:
            return Credentials.model_validate(tomllib.load(f))
    except (OSError, tomllib.TOMLDecodeError, ValidationError) as e:
        warnings.warn(f"Ignoring unreadable credentials file {path}: {e}", UserWarning)
        return Credentials()


def get_github_token(credentials_path: Optional[Path] = None) -> Optional[str]:
    """Get GitHub token from environment or credentials file.

    Priority: Environment > Credentials file
    """
    for name in TOKEN_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value
    return load_credentials(credentials_path).github.token or None


class GitHubTokenAuthProvider:
    """Maps a GitHub token onto basic auth (``x-access-token:<token>``)."""

    username = "x-access-token"

    def __init__(self, *, use_fallbacks: bool = True, credentials_path: Optional[Path] = None):
        self.use_fallbacks = use_fallbacks
        self.credentials_path = credentials_path

    def credentials(self, token: Optional[str] = None) -> Optional[BasicAuth]:
        if not token and self.use_fallbacks:
            token = get_github_token(self.credentials_path)
        if not token:
            return None
        return BasicAuth(self.username, token)
