#!/usr/bin/env python3
"""featuresync CLI - sync a test-asset workspace with its git remote."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from pydantic import BaseModel


def _emit(result: BaseModel) -> None:
    print(json.dumps(result.model_dump(by_alias=True), indent=2))


def _build_engine(config_path: str | None):
    from .config import load_config
    from .credentials import GitHubTokenAuthProvider
    from .git_sync import GitSyncEngine

    config = load_config(Path(config_path) if config_path else None)
    return GitSyncEngine(auth_provider=GitHubTokenAuthProvider(), config=config), config


def unlock(local_path: Path, *, meta_dir: str, ttl: float, force: bool = False) -> None:
    """Clear a workspace lock (debugging tool).

    Stale locks are removed unconditionally; a live lock needs ``force``.
    """
    from .lock import WorkspaceLock
    from .metadata import lock_file_path

    lp = lock_file_path(local_path, dirname=meta_dir)
    print(f"Lock path: {lp}")

    if not lp.exists():
        print("No lock file present.")
        return

    lock = WorkspaceLock(lp, ttl=ttl)
    age = lock.age()
    stale = lock.is_stale()
    print(f"Contents: {json.dumps(lock.info())}")
    print(f"Age: {int(age) if age is not None else -1}s; Stale: {stale}")

    if stale or force:
        try:
            lp.unlink()
            print("Lock removed.")
        except OSError as e:
            sys.exit(f"Failed to remove lock: {e}")
    else:
        sys.exit("Lock appears active; re-run with --force to remove anyway.")


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(
        prog="featuresync",
        description="Keep a local test-asset workspace in sync with a git remote",
    )
    ap.add_argument("--config", help="Config file (default: ~/.featuresync/config.toml)")

    sub = ap.add_subparsers(dest="cmd")

    p_clone = sub.add_parser("clone", help="Clone a repository or reopen an existing workspace")
    p_clone.add_argument("repo_url", help="HTTPS URL of the remote repository")
    p_clone.add_argument("local_path", help="Workspace directory")
    p_clone.add_argument("--owner", required=True, help="Repository owner")
    p_clone.add_argument("--repo", required=True, help="Repository name")
    p_clone.add_argument("--branch", default="main", help="Branch to track (default: main)")
    p_clone.add_argument("--token", help="Access token (default: $GITHUB_TOKEN or credentials file)")

    p_pull = sub.add_parser("pull", help="Fetch and fast-forward the current branch")
    p_pull.add_argument("local_path")
    p_pull.add_argument("--token")

    p_status = sub.add_parser("status", help="Show workspace file status")
    p_status.add_argument("local_path")
    p_status.add_argument("--assets-only", action="store_true", help="Print only test-asset files")

    p_commit = sub.add_parser("commit", help="Commit local changes and push them")
    p_commit.add_argument("local_path")
    p_commit.add_argument("-m", "--message", help="Commit message")
    p_commit.add_argument("--author-name")
    p_commit.add_argument("--author-email")
    p_commit.add_argument("--path", dest="paths", action="append", help="Stage only this path (repeatable)")
    p_commit.add_argument("--token")

    p_unlock = sub.add_parser("unlock", help="Clear a workspace lock (debugging)")
    p_unlock.add_argument("local_path")
    p_unlock.add_argument("--force", action="store_true", help="Remove lock even if active")

    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(1)

    from .errors import ConfigError, GitSyncError

    try:
        engine, config = _build_engine(args.config)

        if args.cmd == "clone":
            meta = engine.clone_or_open({
                "owner": args.owner,
                "repo": args.repo,
                "branch": args.branch,
                "repoUrl": args.repo_url,
                "token": args.token or "",
                "localPath": args.local_path,
            })
            _emit(meta)
            sys.exit(0)

        if args.cmd == "pull":
            _emit(engine.pull(args.local_path, args.token))
            sys.exit(0)

        if args.cmd == "status":
            result = engine.get_status(args.local_path)
            if args.assets_only:
                for entry in result.filtered_status:
                    print(f"{entry.status:<10} {entry.path}")
            else:
                _emit(result)
            sys.exit(0)

        if args.cmd == "commit":
            result = engine.commit_and_push(
                args.local_path,
                args.token,
                {
                    "message": args.message,
                    "authorName": args.author_name,
                    "authorEmail": args.author_email,
                    "paths": args.paths,
                },
            )
            _emit(result)
            sys.exit(0)

        if args.cmd == "unlock":
            unlock(Path(args.local_path), meta_dir=config.meta_dir, ttl=config.lock_ttl, force=args.force)
            sys.exit(0)
    except (GitSyncError, ConfigError) as e:
        sys.exit(f"featuresync {args.cmd}: {type(e).__name__}: {e}")


if __name__ == "__main__":
    main()
