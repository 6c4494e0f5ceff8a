"""Exception taxonomy for workspace synchronization.

Callers receive one of these typed errors from the public engine
operations. Anything that does not fit a category below (unexpected
transport or plumbing failures) propagates unchanged.
"""

from __future__ import annotations

from typing import List, Optional


class GitSyncError(Exception):
    """Base exception for git sync operations."""
    pass


class AuthError(GitSyncError):
    """Remote rejected our credentials (HTTP 401/403) or the transport is unsupported."""
    pass


class NotFoundError(GitSyncError):
    """Repository, branch or workspace metadata could not be found."""
    pass


class MergeConflict(GitSyncError):
    """Local and remote histories diverged; a fast-forward is not possible.

    ``conflicts`` is always empty: pulls are fast-forward only, so no merge
    is attempted and no per-path conflicts exist.
    """

    def __init__(self, message: str, conflicts: Optional[List[str]] = None):
        super().__init__(message)
        self.conflicts: List[str] = list(conflicts or [])


class WorkspaceLocked(GitSyncError):
    """Another operation holds the workspace lock."""

    def __init__(self, message: str, *, holder: Optional[dict] = None):
        super().__init__(message)
        self.holder = holder


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass
