from __future__ import annotations

import json
import re
import threading
import time
from pathlib import Path

import pytest
from dulwich.client import HTTPUnauthorized, LocalGitClient
from dulwich.index import commit_tree
from dulwich.object_store import iter_tree_contents
from dulwich.objects import Blob, Commit
from dulwich.repo import Repo

from featuresync import plumbing
from featuresync.credentials import BasicAuth, GitHubTokenAuthProvider
from featuresync.errors import (
    AuthError,
    GitSyncError,
    MergeConflict,
    NotFoundError,
    WorkspaceLocked,
)
from featuresync.git_sync import GitSyncEngine
from featuresync.lock import WorkspaceLock
from featuresync.metadata import lock_file_path, read_meta
from featuresync.models import FileStatus
from featuresync.transport import DulwichTransport


OID_RE = re.compile(r"^[0-9a-f]{40}$")
SEED_FILES = {
    "README.md": "seed\n",
    "features/login.feature": "Feature: Login\n",
    "steps/login.steps.ts": "// steps\n",
}


def write_commit(repo: Repo, files: dict, message: str, branch: str = "main") -> str:
    """Commit a full snapshot of ``files`` on top of ``branch`` and return its id."""
    ref = f"refs/heads/{branch}".encode()
    entries = []
    for path, content in files.items():
        blob = Blob.from_string(content.encode("utf-8"))
        repo.object_store.add_object(blob)
        entries.append((path.encode("utf-8"), blob.id, 0o100644))
    commit = Commit()
    commit.tree = commit_tree(repo.object_store, entries)
    try:
        commit.parents = [repo.refs[ref]]
    except KeyError:
        commit.parents = []
    commit.author = commit.committer = b"Tester <test@example.com>"
    commit.author_time = commit.commit_time = int(time.time())
    commit.author_timezone = commit.commit_timezone = 0
    commit.message = message.encode("utf-8") + b"\n"
    repo.object_store.add_object(commit)
    repo.refs[ref] = commit.id
    return commit.id.decode("ascii")


def seed_remote(remote_path: Path, files: dict | None = None) -> str:
    """Create a bare remote with a seeded main branch."""
    remote_path.mkdir(parents=True, exist_ok=True)
    with Repo.init_bare(str(remote_path)) as repo:
        repo.refs.set_symbolic_ref(b"HEAD", b"refs/heads/main")
        return write_commit(repo, files or SEED_FILES, "seed")


def remote_commit(remote_path: Path, files: dict, message: str = "remote change") -> str:
    with Repo(str(remote_path)) as repo:
        return write_commit(repo, files, message)


def branch_head(path: Path, branch: str = "main") -> str:
    with Repo(str(path)) as repo:
        return repo.refs[f"refs/heads/{branch}".encode()].decode("ascii")


def params(remote: Path | str, local: Path, **overrides) -> dict:
    data = {
        "owner": "acme",
        "repo": "suite",
        "branch": "main",
        "repoUrl": str(remote),
        "token": "",
        "localPath": str(local),
    }
    data.update(overrides)
    return data


class CountingTransport(DulwichTransport):
    def __init__(self):
        self.fetches = 0
        self.pushes = 0

    def fetch(self, *args, **kwargs):
        self.fetches += 1
        return super().fetch(*args, **kwargs)

    def push(self, *args, **kwargs):
        self.pushes += 1
        return super().push(*args, **kwargs)


class MirrorTransport(DulwichTransport):
    """Serves https:// URLs from local bare repositories."""

    def __init__(self, mirrors: dict):
        self.mirrors = mirrors
        self.calls = []

    def _client_for(self, url, credentials):
        self.calls.append((url, credentials))
        return LocalGitClient(), str(self.mirrors[url])


class FailingPushTransport(DulwichTransport):
    def push(self, *args, **kwargs):
        raise ConnectionResetError("connection reset by peer")


class RaisingFetchTransport(DulwichTransport):
    def __init__(self, exc: Exception):
        self.exc = exc

    def fetch(self, *args, **kwargs):
        raise self.exc


@pytest.fixture
def remote(tmp_path: Path) -> Path:
    path = tmp_path / "remote.git"
    seed_remote(path)
    return path


@pytest.fixture
def workspace(tmp_path: Path, remote: Path) -> Path:
    local = tmp_path / "workspace"
    GitSyncEngine().clone_or_open(params(remote, local))
    return local


# ----------------------------------------------------------------------
# clone_or_open
# ----------------------------------------------------------------------


def test_clone_checks_out_branch_and_writes_metadata(tmp_path, remote):
    local = tmp_path / "workspace"
    meta = GitSyncEngine().clone_or_open(params(remote, local))

    assert (local / ".git").is_dir()
    assert (local / "features" / "login.feature").read_text() == "Feature: Login\n"
    assert (local / "steps" / "login.steps.ts").exists()
    assert meta.last_pulled_oid == branch_head(remote)
    assert branch_head(local) == meta.last_pulled_oid

    stored = json.loads((local / ".app" / "workspace.json").read_text())
    assert stored == {
        "owner": "acme",
        "repo": "suite",
        "branch": "main",
        "remoteUrl": str(remote),
        "lastPulledOid": meta.last_pulled_oid,
    }
    assert not lock_file_path(local).exists()


def test_clone_leaves_clean_status(workspace):
    result = GitSyncEngine().get_status(workspace)
    assert result.full_status == []
    assert result.has_remote is True
    assert result.branch == "main"


def test_clone_or_open_is_idempotent(tmp_path, remote):
    local = tmp_path / "workspace"
    transport = CountingTransport()
    engine = GitSyncEngine(transport=transport)

    first = engine.clone_or_open(params(remote, local))
    raw_first = (local / ".app" / "workspace.json").read_text()
    second = engine.clone_or_open(params(remote, local))

    assert first == second
    assert (local / ".app" / "workspace.json").read_text() == raw_first
    assert transport.fetches == 1


def test_open_replaces_changed_remote_url(tmp_path, remote, workspace):
    mirror = tmp_path / "mirror.git"
    seed_remote(mirror)

    meta = GitSyncEngine().clone_or_open(params(mirror, workspace))

    assert meta.remote_url == str(mirror)
    with Repo(str(workspace)) as repo:
        config = repo.get_config()
        assert config.get((b"remote", b"origin"), b"url") == str(mirror).encode()


def test_open_switches_to_tracked_branch(tmp_path, remote, workspace):
    with Repo(str(remote)) as repo:
        write_commit(repo, {**SEED_FILES, "features/dev.feature": "Feature: Dev\n"}, "dev", branch="develop")
    engine = GitSyncEngine()
    with Repo(str(workspace)) as repo:
        oid = engine.transport.fetch(repo, str(remote), "develop")
        repo.refs[b"refs/remotes/origin/develop"] = oid.encode()

    meta = engine.clone_or_open(params(remote, workspace, branch="develop"))

    assert meta.branch == "develop"
    assert meta.last_pulled_oid == branch_head(remote, "develop")
    assert (workspace / "features" / "dev.feature").exists()
    with Repo(str(workspace)) as repo:
        assert repo.refs.read_ref(b"HEAD") == b"ref: refs/heads/develop"


def test_open_unknown_branch_raises_not_found(remote, workspace):
    with pytest.raises(NotFoundError):
        GitSyncEngine().clone_or_open(params(remote, workspace, branch="nope"))


def test_clone_end_to_end_over_https_url(tmp_path):
    backing = tmp_path / "backing.git"
    seed_remote(backing)
    url = "https://example/a/b.git"
    transport = MirrorTransport({url: backing})
    engine = GitSyncEngine(
        auth_provider=GitHubTokenAuthProvider(use_fallbacks=False), transport=transport
    )
    local = tmp_path / "dir"

    engine.clone_or_open({
        "owner": "a",
        "repo": "b",
        "branch": "main",
        "repoUrl": url,
        "token": "t",
        "localPath": str(local),
    })

    assert (local / ".git").exists()
    stored = json.loads((local / ".app" / "workspace.json").read_text())
    oid = stored.pop("lastPulledOid")
    assert OID_RE.match(oid)
    assert stored == {"owner": "a", "repo": "b", "branch": "main", "remoteUrl": url}
    assert transport.calls == [(url, BasicAuth("x-access-token", "t"))]


@pytest.mark.parametrize(
    "exc, expected",
    [
        (HTTPUnauthorized("Basic", "https://example/a/b.git"), AuthError),
        (OSError("HTTP Error 404: Not Found"), NotFoundError),
    ],
)
def test_clone_classifies_transport_errors(tmp_path, exc, expected):
    local = tmp_path / "workspace"
    engine = GitSyncEngine(transport=RaisingFetchTransport(exc))

    with pytest.raises(expected):
        engine.clone_or_open(params("https://example/a/b.git", local))

    # A failed clone does not leave a repository marker behind
    assert not (local / ".git").exists()
    assert read_meta(local) is None
    assert not lock_file_path(local).exists()


def test_clone_unclassified_error_propagates(tmp_path):
    engine = GitSyncEngine(transport=RaisingFetchTransport(ConnectionResetError("reset")))
    with pytest.raises(ConnectionResetError):
        engine.clone_or_open(params("https://example/a/b.git", tmp_path / "ws"))


def test_clone_rejects_ssh_remote(tmp_path):
    with pytest.raises(AuthError, match="SSH"):
        GitSyncEngine().clone_or_open(params("git@github.com:a/b.git", tmp_path / "ws"))


def test_clone_missing_branch(tmp_path, remote):
    with pytest.raises(NotFoundError):
        GitSyncEngine().clone_or_open(params(remote, tmp_path / "ws", branch="release"))


# ----------------------------------------------------------------------
# pull
# ----------------------------------------------------------------------


def test_pull_fast_forwards(remote, workspace):
    new_files = {
        "README.md": "seed\n",
        "features/login.feature": "Feature: Login\n  Scenario: ok\n",
        "features/signup.feature": "Feature: Signup\n",
    }
    remote_oid = remote_commit(remote, new_files)

    result = GitSyncEngine().pull(workspace)

    assert result.head_oid == remote_oid
    assert result.conflicts == []
    # Added and deleted files are applied but only modifications are reported
    assert result.updated_files == ["features/login.feature"]
    assert branch_head(workspace) == remote_oid
    assert read_meta(workspace).last_pulled_oid == remote_oid
    assert (workspace / "features" / "signup.feature").read_text() == "Feature: Signup\n"
    assert "Scenario: ok" in (workspace / "features" / "login.feature").read_text()
    assert not (workspace / "steps" / "login.steps.ts").exists()
    assert not (workspace / "steps").exists()
    # Index follows the new tree
    assert GitSyncEngine().get_status(workspace).full_status == []


def test_pull_up_to_date_is_noop(workspace):
    before = branch_head(workspace)
    result = GitSyncEngine().pull(workspace)
    assert result.updated_files == []
    assert result.head_oid == before


def test_pull_without_remote_is_noop(tmp_path):
    local = tmp_path / "fresh"
    result = GitSyncEngine().pull(local)
    assert result.updated_files == []
    assert result.conflicts == []
    assert result.head_oid == ""
    assert (local / ".git").exists()


def test_pull_reports_no_updates_for_added_files_only(remote, workspace):
    remote_oid = remote_commit(
        remote, {**SEED_FILES, "features/brand_new.feature": "Feature: Brand new\n"}
    )

    result = GitSyncEngine().pull(workspace)

    assert result.head_oid == remote_oid
    assert result.updated_files == []
    assert (workspace / "features" / "brand_new.feature").exists()


def test_pull_into_unborn_branch_with_remote(tmp_path, remote):
    local = tmp_path / "fresh"
    with plumbing.init_repo(local, "main") as repo:
        plumbing.set_remote(repo, "origin", str(remote), "main")
    remote_oid = branch_head(remote)

    result = GitSyncEngine().pull(local)

    assert result.head_oid == remote_oid
    assert result.updated_files == []
    assert result.conflicts == []
    assert branch_head(local) == remote_oid
    assert (local / "features" / "login.feature").read_text() == "Feature: Login\n"
    assert (local / "steps" / "login.steps.ts").exists()
    meta = read_meta(local)
    assert meta.last_pulled_oid == remote_oid
    assert meta.remote_url == str(remote)
    assert meta.branch == "main"
    assert meta.repo == "fresh"
    assert GitSyncEngine().get_status(local).full_status == []


def test_pull_refuses_diverged_history(remote, workspace):
    remote_commit(remote, {**SEED_FILES, "remote.txt": "remote\n"})
    (workspace / "local.txt").write_text("local\n")
    engine = GitSyncEngine()
    local_commit = engine.commit_and_push(workspace, options={"message": "local"})
    assert local_commit.pushed is False  # remote is ahead

    with pytest.raises(MergeConflict) as exc_info:
        engine.pull(workspace)

    assert exc_info.value.conflicts == []
    assert branch_head(workspace) == local_commit.commit_oid
    assert not (workspace / "remote.txt").exists()
    assert read_meta(workspace).last_pulled_oid == local_commit.commit_oid


def test_pull_does_not_overwrite_local_edits(remote, workspace):
    before = branch_head(workspace)
    remote_commit(remote, {**SEED_FILES, "features/login.feature": "Feature: Remote\n"})
    (workspace / "features" / "login.feature").write_text("Feature: Local\n")

    with pytest.raises(GitSyncError, match="would be overwritten"):
        GitSyncEngine().pull(workspace)

    assert branch_head(workspace) == before
    assert (workspace / "features" / "login.feature").read_text() == "Feature: Local\n"


def test_pull_keeps_unrelated_local_edits(remote, workspace):
    remote_oid = remote_commit(remote, {**SEED_FILES, "README.md": "remote readme\n"})
    (workspace / "features" / "login.feature").write_text("Feature: Local\n")

    result = GitSyncEngine().pull(workspace)

    assert result.head_oid == remote_oid
    assert result.updated_files == ["README.md"]
    assert (workspace / "features" / "login.feature").read_text() == "Feature: Local\n"
    status = GitSyncEngine().get_status(workspace)
    assert status.full_status == [FileStatus(path="features/login.feature", status="modified")]


def test_pull_classifies_auth_errors(workspace):
    engine = GitSyncEngine(transport=RaisingFetchTransport(OSError("401 Unauthorized")))
    with pytest.raises(AuthError):
        engine.pull(workspace, token="bad")


def test_pull_respects_workspace_lock(workspace):
    with WorkspaceLock(lock_file_path(workspace)):
        with pytest.raises(WorkspaceLocked):
            GitSyncEngine().pull(workspace)


# ----------------------------------------------------------------------
# status
# ----------------------------------------------------------------------


def test_status_on_empty_directory_initialises_repo(tmp_path):
    local = tmp_path / "empty"
    local.mkdir()
    (local / "features").mkdir()
    (local / "features" / "new.feature").write_text("Feature: New\n")
    (local / "README.md").write_text("hi\n")

    result = GitSyncEngine().get_status(local)

    assert (local / ".git" / "HEAD").read_text().startswith("ref: refs/heads/main")
    assert result.branch == "main"
    assert result.has_remote is False
    assert FileStatus(path="features/new.feature", status="untracked") in result.full_status
    assert FileStatus(path="README.md", status="untracked") in result.full_status
    assert result.filtered_status == [FileStatus(path="features/new.feature", status="untracked")]
    assert result.counts.untracked == 1


def test_status_reports_each_kind(workspace):
    (workspace / "features" / "login.feature").write_text("Feature: Changed\n")
    (workspace / "steps" / "login.steps.ts").unlink()
    (workspace / "features" / "new.feature").write_text("Feature: New\n")
    (workspace / "features" / "staged.feature").write_text("Feature: Staged\n")
    (workspace / ".gitignore").write_text("*.log\n")
    (workspace / "debug.log").write_text("noise\n")
    with Repo(str(workspace)) as repo:
        index = repo.open_index()
        plumbing.stage_path(repo, index, "features/staged.feature")
        index.write()

    result = GitSyncEngine().get_status(workspace)

    by_path = {s.path: s.status for s in result.full_status}
    assert by_path == {
        ".gitignore": "untracked",
        "features/login.feature": "modified",
        "features/new.feature": "untracked",
        "features/staged.feature": "added",
        "steps/login.steps.ts": "deleted",
    }
    assert {s.path for s in result.filtered_status} == {
        "features/login.feature",
        "features/new.feature",
        "features/staged.feature",
        "steps/login.steps.ts",
    }
    assert result.counts.model_dump() == {"modified": 1, "added": 1, "deleted": 1, "untracked": 1}


def test_status_uses_supported_tree_iteration(workspace, recwarn):
    GitSyncEngine().get_status(workspace)
    assert not [w for w in recwarn if "iter_tree_contents" in str(w.message)]


def test_status_ignores_metadata_directory(workspace):
    result = GitSyncEngine().get_status(workspace)
    assert not any(s.path.startswith(".app") for s in result.full_status)


# ----------------------------------------------------------------------
# commit / push
# ----------------------------------------------------------------------


def test_commit_with_defaults_on_fresh_repo(tmp_path):
    local = tmp_path / "fresh"
    local.mkdir()
    (local / "features").mkdir()
    (local / "features" / "a.feature").write_text("Feature: A\n")

    result = GitSyncEngine().commit_and_push(
        local,
        None,
        {"message": None, "authorName": None, "authorEmail": "  ", "paths": None},
    )

    assert OID_RE.match(result.commit_oid)
    assert result.pushed is False
    assert branch_head(local) == result.commit_oid
    with Repo(str(local)) as repo:
        commit = repo[result.commit_oid.encode()]
        assert commit.message == b"Update via featuresync\n"
        assert commit.author == b"featuresync User <featuresync@local>"
        assert commit.parents == []
        tree = repo[commit.tree]
        assert b"features" in [item.path for item in tree.items()]
    meta = read_meta(local)
    assert meta.last_pulled_oid == result.commit_oid
    assert meta.repo == "fresh"
    assert meta.remote_url == ""


def test_commit_and_push_updates_remote(remote, workspace):
    (workspace / "features" / "new.feature").write_text("Feature: New\n")
    (workspace / "steps" / "login.steps.ts").unlink()
    transport = CountingTransport()

    result = GitSyncEngine(transport=transport).commit_and_push(
        workspace, "token", {"message": "Add scenario", "authorName": "Ana", "authorEmail": "ana@example.com"}
    )

    assert result.pushed is True
    assert transport.pushes == 1
    assert branch_head(remote) == result.commit_oid
    with Repo(str(workspace)) as repo:
        commit = repo[result.commit_oid.encode()]
        assert commit.author == b"Ana <ana@example.com>"
        assert commit.message == b"Add scenario\n"
        assert repo.refs[b"refs/remotes/origin/main"].decode() == result.commit_oid
        paths = {e.path for e in iter_tree_contents(repo.object_store, commit.tree)}
    assert b"features/new.feature" in paths
    assert b"steps/login.steps.ts" not in paths
    assert GitSyncEngine().get_status(workspace).full_status == []
    assert read_meta(workspace).last_pulled_oid == result.commit_oid


def test_commit_explicit_paths_only(workspace):
    (workspace / "features" / "one.feature").write_text("Feature: One\n")
    (workspace / "features" / "two.feature").write_text("Feature: Two\n")

    result = GitSyncEngine(transport=FailingPushTransport()).commit_and_push(
        workspace, options={"message": "one", "paths": ["features/one.feature"]}
    )

    with Repo(str(workspace)) as repo:
        tree = repo[result.commit_oid.encode()].tree
        paths = {e.path for e in iter_tree_contents(repo.object_store, tree)}
    assert b"features/one.feature" in paths
    assert b"features/two.feature" not in paths
    status = GitSyncEngine().get_status(workspace)
    assert status.full_status == [FileStatus(path="features/two.feature", status="untracked")]


def test_commit_dot_stages_every_change(workspace):
    (workspace / "features" / "new.feature").write_text("Feature: New\n")
    (workspace / "steps" / "login.steps.ts").unlink()

    result = GitSyncEngine(transport=FailingPushTransport()).commit_and_push(
        workspace, None, {"message": "m", "paths": ["."]}
    )

    with Repo(str(workspace)) as repo:
        tree = repo[result.commit_oid.encode()].tree
        paths = {e.path for e in iter_tree_contents(repo.object_store, tree)}
    assert b"features/new.feature" in paths
    assert b"steps/login.steps.ts" not in paths
    assert GitSyncEngine().get_status(workspace).full_status == []


def test_commit_directory_path_stages_files_below(workspace):
    (workspace / "features" / "one.feature").write_text("Feature: One\n")
    (workspace / "features" / "nested").mkdir()
    (workspace / "features" / "nested" / "two.feature").write_text("Feature: Two\n")
    (workspace / "features" / "login.feature").unlink()
    (workspace / ".gitignore").write_text("*.log\n")
    (workspace / "features" / "debug.log").write_text("noise\n")
    (workspace / "README.md").write_text("changed\n")

    result = GitSyncEngine(transport=FailingPushTransport()).commit_and_push(
        workspace, options={"message": "features", "paths": ["features"]}
    )

    with Repo(str(workspace)) as repo:
        tree = repo[result.commit_oid.encode()].tree
        paths = {e.path for e in iter_tree_contents(repo.object_store, tree)}
    assert {b"features/one.feature", b"features/nested/two.feature"} <= paths
    assert b"features/login.feature" not in paths
    assert b"features/debug.log" not in paths
    status = GitSyncEngine().get_status(workspace)
    assert {s.path: s.status for s in status.full_status} == {
        ".gitignore": "untracked",
        "README.md": "modified",
    }


def test_commit_explicit_missing_path(workspace):
    with pytest.raises(NotFoundError):
        GitSyncEngine().commit_and_push(workspace, options={"paths": ["features/ghost.feature"]})


def test_push_failure_keeps_local_commit(remote, workspace):
    remote_before = branch_head(remote)
    (workspace / "features" / "new.feature").write_text("Feature: New\n")

    result = GitSyncEngine(transport=FailingPushTransport()).commit_and_push(
        workspace, "t", {"message": "offline"}
    )

    assert OID_RE.match(result.commit_oid)
    assert result.pushed is False
    assert branch_head(workspace) == result.commit_oid
    assert branch_head(remote) == remote_before
    assert read_meta(workspace).last_pulled_oid == result.commit_oid


def test_push_rejected_when_remote_ahead(remote, workspace):
    remote_oid = remote_commit(remote, {**SEED_FILES, "other.txt": "x\n"})
    (workspace / "features" / "new.feature").write_text("Feature: New\n")

    result = GitSyncEngine().commit_and_push(workspace, options={"message": "behind"})

    assert result.pushed is False
    assert branch_head(remote) == remote_oid


# ----------------------------------------------------------------------
# locking across calls
# ----------------------------------------------------------------------


class BlockingFetchTransport(DulwichTransport):
    def __init__(self):
        self.entered = threading.Event()
        self.proceed = threading.Event()

    def fetch(self, *args, **kwargs):
        self.entered.set()
        self.proceed.wait(10)
        return super().fetch(*args, **kwargs)


def test_concurrent_calls_one_fails_fast(remote, workspace):
    transport = BlockingFetchTransport()
    engine = GitSyncEngine(transport=transport)
    outcome = {}

    def run_pull():
        try:
            outcome["result"] = engine.pull(workspace)
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=run_pull)
    worker.start()
    try:
        assert transport.entered.wait(10)
        with pytest.raises(WorkspaceLocked):
            engine.get_status(workspace)
        with pytest.raises(WorkspaceLocked):
            engine.commit_and_push(workspace)
    finally:
        transport.proceed.set()
        worker.join(10)

    assert "error" not in outcome
    assert outcome["result"].head_oid == branch_head(workspace)
    assert not lock_file_path(workspace).exists()
