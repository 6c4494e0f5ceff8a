"""Network transport for fetch and push.

The engine talks to remotes only through the GitTransport protocol, so
tests (and callers with special needs) can inject their own transport.
DulwichTransport is the production implementation: dulwich's smart-HTTP
client for https:// remotes, and its in-process local client for
filesystem paths.
"""

from __future__ import annotations

import re
from typing import Optional, Protocol

from dulwich.client import HTTPUnauthorized, LocalGitClient, get_transport_and_path
from dulwich.errors import NotGitRepository
from dulwich.repo import Repo

from .credentials import BasicAuth
from .errors import AuthError, GitSyncError, NotFoundError
from .observability import log_debug
from . import plumbing


_UNSUPPORTED_URL = re.compile(r"^(?:ssh|git|git\+ssh|ssh\+git)://|^[\w.+-]+@[\w.-]+:", re.IGNORECASE)
_AUTH_STATUS = re.compile(r"\b40[13]\b")
_NOT_FOUND_STATUS = re.compile(r"\b404\b")


class PushRejected(GitSyncError):
    """Remote refused the branch update."""
    pass


class GitTransport(Protocol):
    def fetch(
        self,
        repo: Repo,
        url: str,
        branch: str,
        credentials: Optional[BasicAuth] = None,
        depth: Optional[int] = None,
    ) -> str:
        """Download ``branch`` from ``url`` into ``repo`` and return its remote oid."""
        ...

    def push(
        self,
        repo: Repo,
        url: str,
        branch: str,
        credentials: Optional[BasicAuth] = None,
    ) -> None:
        """Fast-forward the remote ``branch`` to the local branch head."""
        ...


def check_supported_url(url: str) -> None:
    if _UNSUPPORTED_URL.match(url):
        raise AuthError("SSH remotes are not supported in this mode. Use an HTTPS remote.")


def classify_transport_error(exc: BaseException) -> BaseException:
    """Map a transport failure onto the error taxonomy.

    Returns ``exc`` itself when it does not fit a known category.
    """
    if isinstance(exc, GitSyncError):
        return exc
    status = getattr(exc, "status", None)
    message = str(exc)
    if isinstance(exc, HTTPUnauthorized) or status in (401, 403) or _AUTH_STATUS.search(message):
        return AuthError("Authentication failed. Check your GitHub token.")
    if isinstance(exc, NotGitRepository) or status == 404 or _NOT_FOUND_STATUS.search(message):
        return NotFoundError("Repository not found.")
    return exc


class DulwichTransport:
    """GitTransport backed by dulwich's client implementations."""

    def _client_for(self, url: str, credentials: Optional[BasicAuth]):
        check_supported_url(url)
        kwargs = {}
        if credentials is not None and url.lower().startswith(("https://", "http://")):
            kwargs = {"username": credentials.username, "password": credentials.password}
        return get_transport_and_path(url, **kwargs)

    def fetch(
        self,
        repo: Repo,
        url: str,
        branch: str,
        credentials: Optional[BasicAuth] = None,
        depth: Optional[int] = None,
    ) -> str:
        client, path = self._client_for(url, credentials)
        ref = plumbing.branch_ref(branch)

        def determine_wants(refs, depth=None):
            sha = refs.get(ref)
            if sha is None or sha in repo.object_store:
                return []
            return [sha]

        if isinstance(client, LocalGitClient):
            # Local remotes hand over objects directly; history depth only
            # matters on the wire
            depth = None
        result = client.fetch(path, repo, determine_wants=determine_wants, depth=depth)
        sha = result.refs.get(ref)
        if sha is None:
            raise NotFoundError(f"Branch '{branch}' not found on remote")
        log_debug("Fetched branch", branch=branch, oid=sha.decode("ascii"))
        return sha.decode("ascii")

    def push(
        self,
        repo: Repo,
        url: str,
        branch: str,
        credentials: Optional[BasicAuth] = None,
    ) -> None:
        client, path = self._client_for(url, credentials)
        ref = plumbing.branch_ref(branch)
        local_sha = repo.refs[ref]

        def update_refs(refs):
            remote_sha = refs.get(ref)
            if remote_sha is not None and remote_sha != local_sha:
                if not plumbing.is_ancestor(repo, remote_sha.decode("ascii"), local_sha.decode("ascii")):
                    raise PushRejected(
                        f"Remote branch '{branch}' has commits that are not present locally"
                    )
            return {ref: local_sha}

        result = client.send_pack(path, update_refs, generate_pack_data=repo.generate_pack_data)
        ref_status = getattr(result, "ref_status", None) or {}
        error = ref_status.get(ref)
        if error:
            raise PushRejected(f"Remote rejected update of '{branch}': {error}")
        log_debug("Pushed branch", branch=branch, oid=local_sha.decode("ascii"))
