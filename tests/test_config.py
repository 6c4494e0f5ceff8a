from __future__ import annotations

from pathlib import Path

import pytest

from featuresync.config import DEFAULT_FILTER_GLOBS, SyncConfig, load_config
from featuresync.errors import ConfigError


def test_defaults(tmp_path: Path):
    cfg = load_config(tmp_path / "missing.toml")
    assert cfg == SyncConfig()
    assert cfg.meta_dir == ".app"
    assert cfg.lock_ttl == 30.0
    assert cfg.clone_depth == 50
    assert cfg.default_branch == "main"
    assert cfg.filter_globs == DEFAULT_FILTER_GLOBS


def test_toml_then_environment(tmp_path: Path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text('[sync]\nclone_depth = 10\ndefault_branch = "develop"\n', encoding="utf-8")
    assert load_config(path).clone_depth == 10

    monkeypatch.setenv("FEATURESYNC_CLONE_DEPTH", "3")
    cfg = load_config(path)
    assert cfg.clone_depth == 3
    assert cfg.default_branch == "develop"


def test_user_config_location(isolated_home):
    path = isolated_home / ".featuresync" / "config.toml"
    path.parent.mkdir(parents=True)
    path.write_text("[sync]\nlock_ttl = 5\n", encoding="utf-8")
    assert load_config().lock_ttl == 5.0


@pytest.mark.parametrize(
    "body",
    [
        "[sync]\nlock_ttl = 0\n",
        "[sync]\nclone_depth = 0\n",
        '[sync]\nmeta_dir = "../outside"\n',
        '[sync]\ndefault_branch = "bad name"\n',
        "sync = 3\n",
        "[sync\n",
    ],
)
def test_invalid_config_raises(tmp_path: Path, body: str):
    path = tmp_path / "config.toml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)
