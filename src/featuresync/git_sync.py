"""Git-based synchronization of a local test-asset workspace.

GitSyncEngine keeps a working directory in step with one branch of one
HTTPS remote, using dulwich for every git operation:

- clone_or_open: shallow single-branch clone, or reopen and re-point an
  existing checkout
- pull: fetch + fast-forward only; diverged histories are refused
- get_status: file-level status, filtered down to test assets
- commit_and_push: stage, commit on the branch ref, push if a remote exists

Every public method runs under a WorkspaceLock keyed by the workspace
path, so a second call against the same path fails fast with
WorkspaceLocked instead of queuing. Workspace metadata is written only
after all git mutations for a call have succeeded.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Mapping, NoReturn, Optional, Union

from dulwich.repo import Repo

from . import plumbing
from . import status as status_interp
from .config import SyncConfig
from .credentials import AuthProvider, BasicAuth
from .errors import MergeConflict
from .lock import WorkspaceLock
from .metadata import lock_file_path, read_meta, write_meta
from .models import (
    CommitPushOptions,
    CommitPushResult,
    GitWorkspaceParams,
    PullResult,
    WorkspaceMetadata,
    WorkspaceStatusResult,
)
from .observability import log_info, log_warning, timeit
from .transport import DulwichTransport, GitTransport, classify_transport_error


# Entry in CommitPushOptions.paths meaning "every changed path"
WILDCARD_PATH = "."


class GitSyncEngine:
    """Synchronizes workspaces with their remote repositories.

    Attributes:
        auth_provider: Resolves credentials for network calls (None = anonymous)
        transport: Performs fetch and push against remotes
        config: Engine settings (lock TTL, clone depth, defaults, asset globs)

    Thread Safety:
        One instance may serve many workspaces. Calls against the same
        workspace path are serialized by the on-disk workspace lock, which
        also protects against other processes.
    """

    def __init__(
        self,
        auth_provider: Optional[AuthProvider] = None,
        transport: Optional[GitTransport] = None,
        config: Optional[SyncConfig] = None,
    ):
        self.auth_provider = auth_provider
        self.transport = transport if transport is not None else DulwichTransport()
        self.config = config if config is not None else SyncConfig()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock(self, local_path: Path) -> WorkspaceLock:
        return WorkspaceLock(
            lock_file_path(local_path, dirname=self.config.meta_dir), ttl=self.config.lock_ttl
        )

    def _credentials(self, token: Optional[str]) -> Optional[BasicAuth]:
        if self.auth_provider is None:
            return None
        return self.auth_provider.credentials(token)

    @property
    def _exclude(self) -> tuple:
        return (self.config.meta_dir,)

    @staticmethod
    def _raise_classified(exc: Exception) -> NoReturn:
        mapped = classify_transport_error(exc)
        if mapped is exc:
            raise exc
        raise mapped from exc

    def _fetch_branch(
        self,
        repo: Repo,
        url: str,
        branch: str,
        token: Optional[str],
        depth: Optional[int] = None,
    ) -> str:
        """Fetch ``branch`` and record it under the remote-tracking ref."""
        remote_oid = self.transport.fetch(repo, url, branch, self._credentials(token), depth)
        repo.refs[plumbing.tracking_ref(self.config.remote_name, branch)] = remote_oid.encode("ascii")
        return remote_oid

    def _repo_context(self, local_path: Path) -> tuple[Repo, str, Optional[str]]:
        repo = plumbing.open_or_init(local_path, self.config.default_branch)
        branch = plumbing.current_branch(repo, self.config.default_branch)
        remote_url = plumbing.get_remote_url(repo, self.config.remote_name)
        return repo, branch, remote_url

    def _update_workspace_meta(
        self,
        local_path: Path,
        branch: str,
        remote_url: Optional[str],
        head_oid: str,
    ) -> WorkspaceMetadata:
        current = read_meta(local_path, dirname=self.config.meta_dir)
        meta = WorkspaceMetadata(
            owner=current.owner if current else "",
            repo=current.repo if current else local_path.name,
            branch=branch,
            remote_url=remote_url or (current.remote_url if current else ""),
            last_pulled_oid=head_oid,
        )
        write_meta(local_path, meta, dirname=self.config.meta_dir)
        return meta

    # ------------------------------------------------------------------
    # clone / open
    # ------------------------------------------------------------------

    def _open_existing(self, local_path: Path, params: GitWorkspaceParams) -> Repo:
        log_info("Opening existing repo", path=str(local_path))
        repo = Repo(str(local_path))
        remote = self.config.remote_name
        try:
            if plumbing.get_remote_url(repo, remote) != params.repo_url:
                plumbing.set_remote(repo, remote, params.repo_url, params.branch)
            plumbing.switch_branch(repo, params.branch, remote, exclude=self._exclude)
        except BaseException:
            repo.close()
            raise
        return repo

    def _clone(self, local_path: Path, params: GitWorkspaceParams) -> Repo:
        log_info("Cloning repo", url=params.repo_url, path=str(local_path), branch=params.branch)
        repo = plumbing.init_repo(local_path, params.branch)
        try:
            plumbing.set_remote(repo, self.config.remote_name, params.repo_url, params.branch)
            remote_oid = self._fetch_branch(
                repo, params.repo_url, params.branch, params.token, depth=self.config.clone_depth
            )
            repo.refs[plumbing.branch_ref(params.branch)] = remote_oid.encode("ascii")
            plumbing.checkout_changes(repo, None, remote_oid)
        except BaseException:
            # Leave no half-made marker behind, so the next call clones again
            repo.close()
            shutil.rmtree(local_path / ".git", ignore_errors=True)
            raise
        return repo

    def clone_or_open(
        self, params: Union[GitWorkspaceParams, Mapping[str, Any]]
    ) -> WorkspaceMetadata:
        """Clone the remote branch into ``local_path``, or reopen an existing checkout.

        Raises:
            AuthError: Remote rejected the credentials (HTTP 401/403)
            NotFoundError: Repository or branch does not exist (HTTP 404)
            WorkspaceLocked: Another operation holds the workspace lock
        """
        if not isinstance(params, GitWorkspaceParams):
            params = GitWorkspaceParams.model_validate(params)
        local_path = Path(params.local_path)

        with timeit("clone_or_open", branch=params.branch) as info, self._lock(local_path):
            try:
                if plumbing.has_repo_marker(local_path):
                    info["mode"] = "open"
                    repo = self._open_existing(local_path, params)
                else:
                    info["mode"] = "clone"
                    repo = self._clone(local_path, params)
            except Exception as exc:
                self._raise_classified(exc)

            with repo:
                head_oid = plumbing.resolve_ref(repo, plumbing.branch_ref(params.branch))
            meta = WorkspaceMetadata(
                owner=params.owner,
                repo=params.repo,
                branch=params.branch,
                remote_url=params.repo_url,
                last_pulled_oid=head_oid,
            )
            write_meta(local_path, meta, dirname=self.config.meta_dir)
            return meta

    # ------------------------------------------------------------------
    # pull
    # ------------------------------------------------------------------

    def pull(self, local_path: Union[str, Path], token: Optional[str] = None) -> PullResult:
        """Fetch the current branch and fast-forward to it.

        Raises:
            MergeConflict: Local and remote histories diverged (nothing is changed)
            AuthError / NotFoundError: Classified fetch failures
            GitSyncError: Uncommitted edits would be overwritten (nothing is changed)
            WorkspaceLocked: Another operation holds the workspace lock
        """
        local_path = Path(local_path)
        with timeit("pull") as info, self._lock(local_path):
            repo, branch, remote_url = self._repo_context(local_path)
            with repo:
                before_oid = plumbing.resolve_ref(repo, plumbing.branch_ref(branch))
                if not remote_url:
                    info["noop"] = "no_remote"
                    return PullResult(head_oid=before_oid or "")

                try:
                    remote_oid = self._fetch_branch(repo, remote_url, branch, token)
                except Exception as exc:
                    self._raise_classified(exc)

                if remote_oid == before_oid:
                    info["noop"] = "up_to_date"
                    return PullResult(head_oid=before_oid)

                if before_oid and not plumbing.is_ancestor(repo, before_oid, remote_oid):
                    raise MergeConflict(
                        "Remote has diverged. Fast-forward merge not possible.", []
                    )

                plumbing.ensure_clean(
                    repo,
                    plumbing.changed_paths(repo, before_oid, remote_oid),
                    exclude=self._exclude,
                )
                updated_files = plumbing.updated_paths(repo, before_oid, remote_oid)

                repo.refs[plumbing.branch_ref(branch)] = remote_oid.encode("ascii")
                plumbing.checkout_changes(repo, before_oid, remote_oid)

            self._update_workspace_meta(local_path, branch, remote_url, remote_oid)
            info["updated"] = len(updated_files)
            return PullResult(updated_files=updated_files, conflicts=[], head_oid=remote_oid)

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def get_status(self, local_path: Union[str, Path]) -> WorkspaceStatusResult:
        """Report file statuses, plus the subset that are test assets."""
        local_path = Path(local_path)
        with timeit("get_status"), self._lock(local_path):
            repo, branch, remote_url = self._repo_context(local_path)
            with repo:
                matrix = plumbing.status_matrix(repo, exclude=self._exclude)

            full_status = status_interp.interpret(matrix)
            filtered_status = status_interp.filter_assets(full_status, self.config.filter_globs)
            return WorkspaceStatusResult(
                branch=branch,
                has_remote=bool(remote_url),
                full_status=full_status,
                filtered_status=filtered_status,
                counts=status_interp.count(filtered_status),
            )

    # ------------------------------------------------------------------
    # commit / push
    # ------------------------------------------------------------------

    def _stage_all(self, repo: Repo, index) -> None:
        for path, _head, workdir, _stage in plumbing.status_matrix(repo, exclude=self._exclude):
            if workdir == 2:
                plumbing.stage_path(repo, index, path)
            elif workdir == 0:
                plumbing.unstage_path(index, path)

    def commit_and_push(
        self,
        local_path: Union[str, Path],
        token: Optional[str] = None,
        options: Union[CommitPushOptions, Mapping[str, Any], None] = None,
    ) -> CommitPushResult:
        """Stage changes, commit them on the current branch and push if possible.

        A failed push leaves the commit in place and returns ``pushed=False``.
        """
        if not isinstance(options, CommitPushOptions):
            options = CommitPushOptions.model_validate(options or {})
        message = options.message or self.config.default_message
        author_name = options.author_name or self.config.default_author_name
        author_email = options.author_email or self.config.default_author_email
        local_path = Path(local_path)

        with timeit("commit_and_push") as info, self._lock(local_path):
            repo, branch, remote_url = self._repo_context(local_path)
            with repo:
                index = repo.open_index()
                paths = options.paths or [WILDCARD_PATH]
                if WILDCARD_PATH in paths:
                    self._stage_all(repo, index)
                for path in paths:
                    if path != WILDCARD_PATH:
                        plumbing.stage_path(repo, index, path, exclude=self._exclude)
                index.write()

                commit_oid = plumbing.commit_index(
                    repo,
                    index,
                    plumbing.branch_ref(branch),
                    message,
                    author_name,
                    author_email,
                )
                pushed = False
                if remote_url:
                    try:
                        self.transport.push(repo, remote_url, branch, self._credentials(token))
                        repo.refs[plumbing.tracking_ref(self.config.remote_name, branch)] = (
                            commit_oid.encode("ascii")
                        )
                        pushed = True
                    except Exception as exc:
                        mapped = classify_transport_error(exc)
                        log_warning(
                            "Push failed; commit kept locally",
                            branch=branch,
                            commit=commit_oid,
                            error=type(mapped).__name__,
                            detail=str(mapped),
                        )

            self._update_workspace_meta(local_path, branch, remote_url, commit_oid)
            info["pushed"] = pushed
            return CommitPushResult(commit_oid=commit_oid, pushed=pushed)
