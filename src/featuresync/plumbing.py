"""Low-level git operations on top of dulwich's object model.

Everything here works on refs, commits, trees, blobs and the index
directly; nothing shells out to a git binary. Paths handed in and out are
POSIX-style strings relative to the repository root.
"""

from __future__ import annotations

import os
import stat
import time
from collections import deque
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from dulwich.diff_tree import CHANGE_DELETE, tree_changes
from dulwich.errors import NotGitRepository
from dulwich.ignore import IgnoreFilterManager
from dulwich.index import (
    blob_from_path_and_stat,
    build_file_from_blob,
    index_entry_from_stat,
)
from dulwich.object_store import iter_tree_contents
from dulwich.objects import S_ISGITLINK, Commit
from dulwich.repo import Repo

from .errors import GitSyncError, NotFoundError
from .observability import log_debug


SYMREF_PREFIX = b"ref: "
HEADS_PREFIX = "refs/heads/"

MatrixRow = Tuple[str, int, int, int]


def branch_ref(branch: str) -> bytes:
    return (HEADS_PREFIX + branch).encode("utf-8")


def tracking_ref(remote: str, branch: str) -> bytes:
    return f"refs/remotes/{remote}/{branch}".encode("utf-8")


def has_repo_marker(path: Path | str) -> bool:
    return (Path(path) / ".git").exists()


def init_repo(path: Path | str, branch: str) -> Repo:
    """Initialise a repository whose HEAD points at an unborn ``branch``."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(str(path))
    repo.refs.set_symbolic_ref(b"HEAD", branch_ref(branch))
    log_debug("Initialised repository", path=str(path), branch=branch)
    return repo


def open_or_init(path: Path | str, default_branch: str) -> Repo:
    if has_repo_marker(path):
        try:
            return Repo(str(path))
        except NotGitRepository as exc:
            raise GitSyncError(f"Corrupt repository marker at {path}") from exc
    return init_repo(path, default_branch)


def current_branch(repo: Repo, default: str) -> str:
    """Branch that HEAD points at; ``default`` for a detached or unreadable HEAD."""
    try:
        head = repo.refs.read_ref(b"HEAD")
    except (OSError, KeyError):
        return default
    if head and head.startswith(SYMREF_PREFIX):
        target = head[len(SYMREF_PREFIX):].strip().decode("utf-8")
        if target.startswith(HEADS_PREFIX):
            return target[len(HEADS_PREFIX):]
    return default


def resolve_ref(repo: Repo, ref: bytes) -> Optional[str]:
    try:
        return repo.refs[ref].decode("ascii")
    except KeyError:
        return None


def head_oid(repo: Repo) -> Optional[str]:
    try:
        return repo.head().decode("ascii")
    except KeyError:
        return None


def get_remote_url(repo: Repo, remote: str) -> Optional[str]:
    config = repo.get_config()
    try:
        url = config.get((b"remote", remote.encode("utf-8")), b"url")
    except KeyError:
        return None
    return url.decode("utf-8") if url else None


def set_remote(repo: Repo, remote: str, url: str, branch: str) -> None:
    """Replace ``remote`` with a single-branch remote pointing at ``url``."""
    config = repo.get_config()
    section = (b"remote", remote.encode("utf-8"))
    if section in config:
        del config[section]
    config.set(section, b"url", url.encode("utf-8"))
    config.set(
        section,
        b"fetch",
        b"+" + branch_ref(branch) + b":" + tracking_ref(remote, branch),
    )
    config.write_to_path()
    log_debug("Configured remote", remote=remote, url=url)


def commit_tree_id(repo: Repo, oid: Optional[str]) -> Optional[bytes]:
    if not oid:
        return None
    return repo[oid.encode("ascii")].tree


def is_ancestor(repo: Repo, ancestor: str, descendant: str) -> bool:
    """True when ``ancestor`` is reachable from ``descendant`` via parent links.

    Commits cut off by a shallow fetch are simply not followed.
    """
    target = ancestor.encode("ascii")
    queue = deque([descendant.encode("ascii")])
    seen = set()
    while queue:
        sha = queue.popleft()
        if sha == target:
            return True
        if sha in seen:
            continue
        seen.add(sha)
        try:
            commit = repo[sha]
        except KeyError:
            continue
        queue.extend(commit.parents)
    return False


def _change_path(change) -> str:
    entry = change.new if change.new is not None and change.new.path is not None else change.old
    return entry.path.decode("utf-8")


def changed_paths(repo: Repo, old_oid: Optional[str], new_oid: Optional[str]) -> List[str]:
    """Paths whose blob id differs between two commits (added and deleted included)."""
    paths: List[str] = []
    seen = set()
    changes = tree_changes(
        repo.object_store, commit_tree_id(repo, old_oid), commit_tree_id(repo, new_oid)
    )
    for change in changes:
        path = _change_path(change)
        if path not in seen:
            seen.add(path)
            paths.append(path)
    return paths


def updated_paths(repo: Repo, old_oid: Optional[str], new_oid: Optional[str]) -> List[str]:
    """Paths present in both commits whose blob id differs.

    Additions and deletions are not reported, and nothing is reported when
    there is no old commit.
    """
    if not old_oid or not new_oid:
        return []
    paths: List[str] = []
    changes = tree_changes(
        repo.object_store, commit_tree_id(repo, old_oid), commit_tree_id(repo, new_oid)
    )
    for change in changes:
        old, new = change.old, change.new
        if old is None or new is None or old.path is None or new.path is None:
            continue
        if old.path == new.path and old.sha != new.sha:
            paths.append(new.path.decode("utf-8"))
    return paths


def _is_excluded(rel: str, exclude: Sequence[str]) -> bool:
    return any(rel == d or rel.startswith(d.rstrip("/") + "/") for d in exclude)


def _iter_workdir(repo: Repo, tracked: set, exclude: Sequence[str], subdir: str = ""):
    """Yield ``(path, full_path, stat)`` for tracked and non-ignored untracked files."""
    root = repo.path
    start = os.path.join(root, *subdir.split("/")) if subdir else root
    ignore = IgnoreFilterManager.from_repo(repo)
    for dirpath, dirnames, filenames in os.walk(start):
        rel_dir = os.path.relpath(dirpath, root)
        rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/")
        kept = []
        for name in sorted(dirnames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if name == ".git" or _is_excluded(rel, exclude):
                continue
            if ignore.is_ignored(rel + "/") and not any(t.startswith(rel + "/") for t in tracked):
                continue
            kept.append(name)
        dirnames[:] = kept
        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if _is_excluded(rel, exclude):
                continue
            if rel not in tracked and ignore.is_ignored(rel):
                continue
            full = os.path.join(dirpath, name)
            st = os.lstat(full)
            if not (stat.S_ISREG(st.st_mode) or stat.S_ISLNK(st.st_mode)):
                continue
            yield rel, full, st


def _walk_workdir(repo: Repo, tracked: set, exclude: Sequence[str]) -> dict:
    """Map of workdir path -> blob id for tracked files and non-ignored untracked files."""
    return {
        rel: blob_from_path_and_stat(os.fsencode(full), st).id
        for rel, full, st in _iter_workdir(repo, tracked, exclude)
    }


def status_matrix(repo: Repo, *, exclude: Sequence[str] = ()) -> List[MatrixRow]:
    """Compute ``(path, head, workdir, stage)`` rows for every known path.

    head 0/1 = absent/present in HEAD; workdir 0/1/2 = absent/same as
    HEAD/different; stage 0/1/2/3 = absent/same as HEAD/same as
    workdir/different from both.
    """
    head_entries = {}
    head = head_oid(repo)
    if head:
        tree_id = commit_tree_id(repo, head)
        for entry in iter_tree_contents(repo.object_store, tree_id):
            if S_ISGITLINK(entry.mode):
                continue
            head_entries[entry.path.decode("utf-8")] = entry.sha

    index = repo.open_index()
    staged = {}
    for path, entry in index.items():
        sha = getattr(entry, "sha", None)
        if sha is not None:
            staged[path.decode("utf-8")] = sha

    tracked = set(head_entries) | set(staged)
    workdir = _walk_workdir(repo, tracked, exclude)

    rows: List[MatrixRow] = []
    for path in sorted(tracked | set(workdir)):
        if _is_excluded(path, exclude):
            continue
        h_sha = head_entries.get(path)
        w_sha = workdir.get(path)
        s_sha = staged.get(path)
        h = 1 if h_sha is not None else 0
        if w_sha is None:
            w = 0
        else:
            w = 1 if w_sha == h_sha else 2
        if s_sha is None:
            s = 0
        elif s_sha == h_sha:
            s = 1
        elif s_sha == w_sha:
            s = 2
        else:
            s = 3
        rows.append((path, h, w, s))
    return rows


def dirty_paths(repo: Repo, *, exclude: Sequence[str] = ()) -> List[str]:
    """Paths whose workdir or index state differs from HEAD."""
    return [path for path, h, w, s in status_matrix(repo, exclude=exclude) if (h, w, s) != (1, 1, 1)]


def _stage_file(repo: Repo, index, path: str, full: str, st) -> None:
    blob = blob_from_path_and_stat(os.fsencode(full), st)
    repo.object_store.add_object(blob)
    index[path.encode("utf-8")] = index_entry_from_stat(st, blob.id)


def stage_path(repo: Repo, index, path: str, *, exclude: Sequence[str] = ()) -> None:
    """Stage ``path`` in ``index``: add its current content, or drop it when deleted.

    A directory is staged recursively, skipping ignored and excluded files;
    tracked files missing below it are dropped from the index.
    """
    path = path.strip("/")
    full = os.path.join(repo.path, *path.split("/"))
    key = path.encode("utf-8")
    try:
        st = os.lstat(full)
    except FileNotFoundError:
        if key in index:
            del index[key]
            return
        below = [p for p in index.paths() if p.startswith(key + b"/")]
        if below:
            for p in below:
                del index[p]
            return
        raise NotFoundError(f"Path not found in workspace: {path}")

    if not stat.S_ISDIR(st.st_mode):
        _stage_file(repo, index, path, full, st)
        return

    prefix = path + "/"
    tracked = {p.decode("utf-8") for p in index.paths() if p.startswith(prefix.encode("utf-8"))}
    seen = set()
    for rel, file_full, file_st in _iter_workdir(repo, tracked, exclude, subdir=path):
        seen.add(rel)
        _stage_file(repo, index, rel, file_full, file_st)
    for rel in tracked - seen:
        if not _is_excluded(rel, exclude):
            unstage_path(index, rel)


def unstage_path(index, path: str) -> None:
    key = path.encode("utf-8")
    if key in index:
        del index[key]


def commit_index(
    repo: Repo,
    index,
    ref: bytes,
    message: str,
    author_name: str,
    author_email: str,
) -> str:
    """Write the index as a commit on ``ref`` (created if unborn) and return its id."""
    tree_id = index.commit(repo.object_store)
    try:
        parents = [repo.refs[ref]]
    except KeyError:
        parents = []

    identity = f"{author_name} <{author_email}>".encode("utf-8")
    now = int(time.time())
    offset = time.localtime(now).tm_gmtoff

    commit = Commit()
    commit.tree = tree_id
    commit.parents = parents
    commit.author = commit.committer = identity
    commit.author_time = commit.commit_time = now
    commit.author_timezone = commit.commit_timezone = offset
    commit.encoding = b"UTF-8"
    commit.message = message.encode("utf-8") + (b"" if message.endswith("\n") else b"\n")
    repo.object_store.add_object(commit)
    repo.refs[ref] = commit.id
    return commit.id.decode("ascii")


def _prune_empty_dirs(root: str, rel_path: str) -> None:
    parent = os.path.dirname(os.path.join(root, *rel_path.split("/")))
    while os.path.normpath(parent) != os.path.normpath(root):
        try:
            os.rmdir(parent)
        except OSError:
            return
        parent = os.path.dirname(parent)


def checkout_changes(repo: Repo, old_oid: Optional[str], new_oid: Optional[str]) -> None:
    """Move the working tree and index from one commit's tree to another's.

    Only paths that differ between the two trees are touched.
    """
    root = repo.path
    index = repo.open_index()
    changes = list(
        tree_changes(repo.object_store, commit_tree_id(repo, old_oid), commit_tree_id(repo, new_oid))
    )
    # Deletes first so a file can turn into a directory
    deletes = [c for c in changes if c.type == CHANGE_DELETE]
    writes = [c for c in changes if c.type != CHANGE_DELETE]

    for change in deletes:
        path = change.old.path.decode("utf-8")
        full = os.path.join(root, *path.split("/"))
        try:
            os.unlink(full)
        except FileNotFoundError:
            pass
        unstage_path(index, path)
        _prune_empty_dirs(root, path)

    for change in writes:
        entry = change.new
        if S_ISGITLINK(entry.mode):
            continue
        path = entry.path.decode("utf-8")
        full = os.path.join(root, *path.split("/"))
        os.makedirs(os.path.dirname(full), exist_ok=True)
        if os.path.lexists(full) and not os.path.isdir(full):
            os.unlink(full)
        st = build_file_from_blob(repo[entry.sha], entry.mode, os.fsencode(full))
        index[entry.path] = index_entry_from_stat(st, entry.sha, entry.mode)

    index.write()


def ensure_clean(repo: Repo, paths: Iterable[str], *, exclude: Sequence[str] = ()) -> None:
    """Refuse to continue when any of ``paths`` has uncommitted local edits."""
    wanted = set(paths)
    if not wanted:
        return
    blocked = [p for p in dirty_paths(repo, exclude=exclude) if p in wanted]
    if blocked:
        raise GitSyncError(
            "Local changes would be overwritten by checkout: " + ", ".join(sorted(blocked))
        )


def switch_branch(repo: Repo, branch: str, remote: str, *, exclude: Sequence[str] = ()) -> None:
    """Point HEAD at ``branch``, creating it from the remote-tracking ref if needed."""
    ref = branch_ref(branch)
    head_target = repo.refs.read_ref(b"HEAD")
    if head_target == SYMREF_PREFIX + ref:
        return

    old_oid = head_oid(repo)
    new_oid = resolve_ref(repo, ref)
    if new_oid is None:
        new_oid = resolve_ref(repo, tracking_ref(remote, branch))
        if new_oid is None:
            if old_oid is not None:
                raise NotFoundError(f"Branch '{branch}' not found")
            # No commits anywhere yet: just repoint the unborn HEAD
            repo.refs.set_symbolic_ref(b"HEAD", ref)
            return
        repo.refs[ref] = new_oid.encode("ascii")

    if old_oid != new_oid:
        ensure_clean(repo, changed_paths(repo, old_oid, new_oid), exclude=exclude)
        checkout_changes(repo, old_oid, new_oid)
    repo.refs.set_symbolic_ref(b"HEAD", ref)
    log_debug("Switched branch", branch=branch, oid=new_oid)
