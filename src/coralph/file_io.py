"""Text file helpers: per-path locks, atomic replace, tolerant decoding."""

from __future__ import annotations

import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

_REPLACE_MAX_RETRIES = 8
_REPLACE_RETRY_SECONDS = 0.01
_FALLBACK_DECODERS = ("utf-8-sig", "cp1252", "latin-1")

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}


def path_key(path: str | Path) -> str:
    """Return the canonical string key for *path* (absolute, resolved)."""
    return str(Path(path).expanduser().resolve())


@contextmanager
def locked_path(path: str | Path) -> Iterator[None]:
    """Serialize in-process access to one file."""
    key = path_key(path)
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.setdefault(key, threading.RLock())
    with lock:
        yield


def _replace_with_retry(src: Path, dst: Path) -> None:
    # Another process (editor, virus scanner, the assistant) can briefly hold dst.
    last_error: OSError | None = None
    for attempt in range(_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        if attempt < _REPLACE_MAX_RETRIES - 1:
            time.sleep(_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: str | Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a temp file next to *path*, then swap it in."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
        with locked_path(path):
            _replace_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def read_text_tolerant(path: str | Path) -> str:
    """Read *path* as UTF-8, falling back to common legacy encodings.

    Raises ``FileNotFoundError`` (and any other ``OSError``) unchanged; the
    caller decides what a missing or unreadable file means.
    """
    raw = Path(path).read_bytes()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        pass
    for decoder in _FALLBACK_DECODERS:
        try:
            return raw.decode(decoder)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")  # pragma: no cover - latin-1 always decodes
