from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory, monkeypatch):
    """Keep user config, credentials and tokens from leaking into tests."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    for name in (
        "FEATURESYNC_GITHUB_TOKEN",
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "FEATURESYNC_LOCK_TTL",
        "FEATURESYNC_CLONE_DEPTH",
        "FEATURESYNC_DEFAULT_BRANCH",
        "FEATURESYNC_LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    return home
