from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import WorkspaceMetadata


META_DIR = ".app"
META_FILE = "workspace.json"
LOCK_FILE = "lock"


def meta_dir(local_path: Path | str, *, dirname: str = META_DIR) -> Path:
    return Path(local_path) / dirname


def meta_file_path(local_path: Path | str, *, dirname: str = META_DIR) -> Path:
    return meta_dir(local_path, dirname=dirname) / META_FILE


def lock_file_path(local_path: Path | str, *, dirname: str = META_DIR) -> Path:
    return meta_dir(local_path, dirname=dirname) / LOCK_FILE


def read_meta(local_path: Path | str, *, dirname: str = META_DIR) -> Optional[WorkspaceMetadata]:
    """Return the stored metadata, or None if it is missing or unreadable."""
    path = meta_file_path(local_path, dirname=dirname)
    try:
        raw = path.read_text(encoding="utf-8")
        return WorkspaceMetadata.model_validate(json.loads(raw))
    except (OSError, ValueError, ValidationError):
        return None


def write_meta(local_path: Path | str, meta: WorkspaceMetadata, *, dirname: str = META_DIR) -> Path:
    """Persist metadata as pretty-printed JSON, replacing the file atomically."""
    path = meta_file_path(local_path, dirname=dirname)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(meta.model_dump(by_alias=True), indent=2)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(payload, encoding="utf-8")
    os.replace(tmp, path)
    return path
