"""In-process cache of small text files read repeatedly by the loop.

The loop re-reads ``issues.json``, ``progress.txt`` and the generated task
backlog every iteration.  The assistant edits those files between reads, so
every writer in this process invalidates the entry after writing, and the
controller invalidates all of them at the start of each iteration.
"""

from __future__ import annotations

import datetime as dt
import logging
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from coralph.file_io import path_key, read_text_tolerant

logger = logging.getLogger(__name__)

_Stamp = tuple[int, int]


@dataclass(frozen=True, slots=True)
class FileReadResult:
    """Outcome of a cached read: whether the file existed and its text."""

    exists: bool
    content: str = ""


@dataclass(frozen=True, slots=True)
class CachedFile:
    content: str
    exists: bool
    read_at: dt.datetime
    stamp: _Stamp | None = None


def _stat_stamp(path: str) -> _Stamp | None:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_mtime_ns, st.st_size)


class FileContentCache:
    """Thread-safe map of absolute path -> last read content.

    Parameters
    ----------
    validate_stamps:
        When true (the default), a cached entry is also discarded if the
        file's modification time or size changed since it was read.  This
        catches edits made by other processes that forgot to invalidate.
    """

    def __init__(self, *, validate_stamps: bool = True) -> None:
        self.validate_stamps = validate_stamps
        self._entries: dict[str, CachedFile] = {}
        self._lock = threading.Lock()

    def try_read_text(self, path: str | Path) -> FileReadResult:
        """Return the cached content of *path*, reading from disk on a miss.

        A missing file is a normal outcome (``exists=False``).  Any other
        ``OSError`` propagates to the caller.
        """
        key = path_key(path)
        stamp = _stat_stamp(key) if self.validate_stamps else None
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and (not self.validate_stamps or entry.stamp == stamp):
            return FileReadResult(exists=entry.exists, content=entry.content)

        try:
            content = read_text_tolerant(key)
            exists = True
        except FileNotFoundError:
            content, exists = "", False
        if self.validate_stamps:
            stamp = _stat_stamp(key)
        entry = CachedFile(
            content=content,
            exists=exists,
            read_at=dt.datetime.now(dt.timezone.utc),
            stamp=stamp,
        )
        with self._lock:
            self._entries[key] = entry
        logger.debug("Cache fill %s (exists=%s, %d chars)", key, exists, len(content))
        return FileReadResult(exists=exists, content=content)

    def invalidate(self, path: str | Path) -> None:
        """Drop the entry for *path* so the next read goes to disk."""
        key = path_key(path)
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_many(self, paths: Iterable[str | Path]) -> None:
        for path in paths:
            self.invalidate(path)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        with self._lock:
            return path_key(path) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
