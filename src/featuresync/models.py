"""Data model shared by the sync engine and its callers.

Python attributes are snake_case; ``model_dump(by_alias=True)`` produces
the camelCase JSON shape used on disk (workspace.json) and at the caller
boundary.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


FileStatusType = Literal["untracked", "modified", "deleted", "added"]


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkspaceMetadata(_Model):
    """Per-workspace sync state persisted beside the working tree."""

    owner: str
    repo: str
    branch: str
    remote_url: str = ""
    last_pulled_oid: Optional[str] = None


class GitWorkspaceParams(_Model):
    owner: str
    repo: str
    branch: str
    repo_url: str
    token: str = Field(default="", repr=False)
    local_path: str
    username: Optional[str] = None


class FileStatus(_Model):
    path: str
    status: FileStatusType


class StatusCounts(_Model):
    modified: int = 0
    added: int = 0
    deleted: int = 0
    untracked: int = 0


class WorkspaceStatusResult(_Model):
    branch: str
    has_remote: bool
    full_status: List[FileStatus] = Field(default_factory=list)
    filtered_status: List[FileStatus] = Field(default_factory=list)
    counts: StatusCounts = Field(default_factory=StatusCounts)


class PullResult(_Model):
    updated_files: List[str] = Field(default_factory=list)
    # Always empty while pulls are fast-forward only
    conflicts: List[str] = Field(default_factory=list)
    head_oid: str = ""


class CommitPushOptions(_Model):
    """Options for commit_and_push.

    ``None`` and blank strings mean "use the configured default"; an empty
    or missing ``paths``, or a ``"."`` entry, means "stage everything that
    changed". A directory entry stages the files below it.
    """

    message: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    paths: Optional[List[str]] = None

    @field_validator("message", "author_name", "author_email")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("paths")
    @classmethod
    def empty_paths_to_none(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return v or None


class CommitPushResult(_Model):
    commit_oid: str
    pushed: bool
