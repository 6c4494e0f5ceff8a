from __future__ import annotations

import json
import os
import threading
import time
import uuid
from pathlib import Path

from .errors import WorkspaceLocked
from .observability import log_debug, log_warning


class WorkspaceLock:
    """File-based workspace lock with heartbeat renewal and TTL staleness.

    The lock file holds ``{"pid": ..., "timestamp": ...}``. While the lock is
    held a daemon thread rewrites the timestamp every ``ttl / 3`` seconds, so
    a record whose timestamp is older than ``ttl`` belongs to a holder that
    stopped renewing (crashed or hung) and may be reclaimed.

    Acquisition never waits: a live lock raises WorkspaceLocked at once.

    Environment variables (optional):
    - FEATURESYNC_LOCK_TTL: seconds to consider a lock stale (default 30)
    """

    def __init__(self, path: Path, *, ttl: float | None = None, heartbeat: float | None = None):
        self.path = Path(path)
        self.ttl = ttl if ttl is not None else float(os.getenv("FEATURESYNC_LOCK_TTL", "30"))
        self.heartbeat = heartbeat if heartbeat is not None else max(self.ttl / 3.0, 0.05)
        self.acquired = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _record(self) -> str:
        return json.dumps({"pid": os.getpid(), "timestamp": time.time()})

    def info(self) -> dict | None:
        """Return the current lock record, or None if there is no readable lock."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def age(self) -> float | None:
        info = self.info()
        if info is None:
            return None
        try:
            return time.time() - float(info["timestamp"])
        except (KeyError, TypeError, ValueError):
            return None

    def is_stale(self) -> bool:
        age = self.age()
        if age is None:
            # Unreadable or half-written record: fall back to the file mtime
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return False
        return age > self.ttl

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(self._record())
        return True

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self._try_create():
            holder = self.info()
            if not self.is_stale():
                raise WorkspaceLocked(
                    "Workspace is locked by another operation", holder=holder
                )
            log_warning("Reclaiming stale workspace lock", path=str(self.path), holder=holder)
            self._reclaim_stale()
            # Retry exactly once; losing this race means someone else got it
            if not self._try_create():
                raise WorkspaceLocked(
                    "Workspace is locked by another operation", holder=self.info()
                )
        self.acquired = True
        self._start_heartbeat()
        log_debug("Workspace lock acquired", path=str(self.path))

    def _reclaim_stale(self) -> None:
        """Move the stale record aside, then delete it if it is still stale.

        Only one contender can rename a given file, so a lock created by
        whoever reclaimed first is never deleted by a second contender.
        """
        grabbed = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, grabbed)
        except FileNotFoundError:
            return
        if not WorkspaceLock(grabbed, ttl=self.ttl).is_stale():
            # Took a live lock: put it back unless a new one appeared meanwhile
            try:
                os.link(grabbed, self.path)
            except FileExistsError:
                pass
            os.unlink(grabbed)
            raise WorkspaceLocked(
                "Workspace is locked by another operation", holder=self.info()
            )
        os.unlink(grabbed)

    def _start_heartbeat(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._renew_loop, name="featuresync-lock-heartbeat", daemon=True
        )
        self._thread.start()

    def _renew_loop(self) -> None:
        while not self._stop.wait(self.heartbeat):
            try:
                self.path.write_text(self._record(), encoding="utf-8")
            except OSError:
                # Lock dir vanished under us; release() will clean up
                return

    def release(self) -> None:
        if not self.acquired:
            return
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        try:
            self.path.unlink()
        except OSError:
            pass
        self.acquired = False
        log_debug("Workspace lock released", path=str(self.path))

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
