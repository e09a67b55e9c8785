"""Removal of the generated backlog once the loop has finished its work."""

from __future__ import annotations

import logging
from pathlib import Path

from coralph.agent_signals import is_terminal_signal
from coralph.file_cache import FileContentCache

logger = logging.getLogger(__name__)


def should_delete_for_terminal_signal(signal: str | None) -> bool:
    """Return True when *signal* means the backlog has served its purpose.

    Only the terminal signals qualify.  Running out of iterations keeps the
    backlog so the next run resumes where this one stopped.
    """
    return is_terminal_signal(signal)


def try_delete(
    path: str | Path | None,
    cache: FileContentCache | None = None,
) -> tuple[bool, OSError | None]:
    """Delete the backlog at *path* without raising.

    Returns ``(deleted, error)``.  A blank path or a missing file is
    ``(False, None)``.
    """
    if path is None or not str(path).strip():
        return False, None
    target = Path(path)
    try:
        target.unlink()
    except FileNotFoundError:
        if cache is not None:
            cache.invalidate(target)
        return False, None
    except OSError as exc:
        logger.warning("Could not delete backlog %s: %s", target, exc)
        return False, exc
    if cache is not None:
        cache.invalidate(target)
    logger.info("Deleted backlog %s", target)
    return True, None
