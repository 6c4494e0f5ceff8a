"""Interpretation of the raw status matrix.

Each matrix row is ``(path, head, workdir, stage)``:

- head:    0 absent from the HEAD commit, 1 present
- workdir: 0 absent, 1 identical to HEAD, 2 differs from HEAD
- stage:   0 absent, 1 identical to HEAD, 2 identical to workdir,
           3 differs from both

Only the combinations in STATUS_TABLE are reported; everything else is an
unchanged file.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import FileStatus, FileStatusType, StatusCounts


MatrixRow = Tuple[str, int, int, int]

STATUS_TABLE: Dict[Tuple[int, int, int], FileStatusType] = {
    (0, 2, 0): "untracked",
    (0, 2, 2): "added",
    (0, 2, 3): "added",
    (1, 2, 1): "modified",
    (1, 2, 2): "modified",
    (1, 2, 3): "modified",
    (1, 0, 0): "deleted",
    (1, 0, 1): "deleted",
}


def classify(head: int, workdir: int, stage: int) -> Optional[FileStatusType]:
    return STATUS_TABLE.get((head, workdir, stage))


_GLOB_TOKEN = re.compile(r"\*\*/|\*\*|\*|\?|[^*?]+")


@lru_cache(maxsize=64)
def _glob_to_regex(glob: str) -> re.Pattern[str]:
    """Translate a path glob to an anchored regex.

    ``**/`` matches zero or more directories, any other ``**`` matches
    anything, ``*`` and ``?`` never cross ``/``.
    """
    out = []
    for token in _GLOB_TOKEN.findall(glob):
        if token == "**/":
            out.append("(?:.*/)?")
        elif token == "**":
            out.append(".*")
        elif token == "*":
            out.append("[^/]*")
        elif token == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(token))
    return re.compile("^" + "".join(out) + "$")


def matches_any(path: str, globs: Iterable[str]) -> bool:
    return any(_glob_to_regex(glob).match(path) for glob in globs)


def interpret(matrix: Iterable[MatrixRow]) -> List[FileStatus]:
    statuses = []
    for path, head, workdir, stage in matrix:
        status = classify(head, workdir, stage)
        if status:
            statuses.append(FileStatus(path=path, status=status))
    return statuses


def filter_assets(statuses: Iterable[FileStatus], globs: Sequence[str]) -> List[FileStatus]:
    return [s for s in statuses if matches_any(s.path, globs)]


def count(statuses: Iterable[FileStatus]) -> StatusCounts:
    counts = StatusCounts()
    for s in statuses:
        setattr(counts, s.status, getattr(counts, s.status) + 1)
    return counts
