"""featuresync: keep a local test-asset workspace in sync with a git remote."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("featuresync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .errors import (  # noqa: F401
    AuthError,
    GitSyncError,
    MergeConflict,
    NotFoundError,
    WorkspaceLocked,
)
from .git_sync import GitSyncEngine  # noqa: F401
from .lock import WorkspaceLock  # noqa: F401

__all__ = [
    "AuthError",
    "GitSyncEngine",
    "GitSyncError",
    "MergeConflict",
    "NotFoundError",
    "WorkspaceLock",
    "WorkspaceLocked",
    "__version__",
]
