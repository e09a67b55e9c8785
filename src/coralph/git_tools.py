"""Git helpers: repository discovery, progress commits, remote parsing."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

PROGRESS_COMMIT_MESSAGE = "chore: update progress.txt"

_GITHUB_HTTPS_RE = re.compile(
    r"^https?://(?:[^@/]+@)?github\.com/(?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$",
    re.IGNORECASE,
)
_GITHUB_SSH_RE = re.compile(
    r"^(?:ssh://)?git@github\.com[:/](?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$",
    re.IGNORECASE,
)


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that keep child console events away from the parent on Windows."""
    if os.name != "nt":
        return {}
    flags = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            **_git_subprocess_isolation_kwargs(),
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"`git {' '.join(args)}` timed out after {timeout}s") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Repository discovery
# ---------------------------------------------------------------------------


def resolve_repo_root(directory: str | Path) -> Path | None:
    """Return the top-level directory of the git work tree containing *directory*."""
    path = Path(directory).resolve()
    if not path.is_dir():
        return None
    try:
        out = _run_git("rev-parse", "--show-toplevel", cwd=path).stdout.strip()
    except GitError:
        return None
    return Path(out).resolve() if out else None


def is_git_repo(directory: str | Path) -> bool:
    return resolve_repo_root(directory) is not None


def remote_url(repo: str | Path, remote: str = "origin") -> str | None:
    result = _run_git("remote", "get-url", remote, cwd=Path(repo), check=False)
    url = result.stdout.strip()
    return url if result.returncode == 0 and url else None


def parse_github_url(url: str | None) -> tuple[str, str] | None:
    """Return ``(owner, repo)`` for a GitHub https or ssh remote URL."""
    text = (url or "").strip()
    for pattern in (_GITHUB_HTTPS_RE, _GITHUB_SSH_RE):
        match = pattern.match(text)
        if match:
            return match.group("owner"), match.group("repo")
    return None


# ---------------------------------------------------------------------------
# Progress commits
# ---------------------------------------------------------------------------


def status_porcelain(repo: str | Path, *paths: str) -> str:
    """Return ``git status --porcelain`` output, optionally limited to *paths*."""
    args = ["status", "--porcelain"]
    if paths:
        args.extend(["--", *paths])
    return _run_git(*args, cwd=Path(repo)).stdout.strip()


def commit_progress_if_needed(
    progress_file: str | Path,
    repo: str | Path,
    *,
    message: str = PROGRESS_COMMIT_MESSAGE,
) -> bool:
    """Commit *progress_file* alone when git reports it changed.

    Returns True when a commit was made.  Raises :class:`GitError` when git
    itself fails.
    """
    repo_path = Path(repo).resolve()
    target = Path(progress_file)
    if not target.is_absolute():
        target = repo_path / target
    if not target.exists():
        logger.debug("No progress file at %s; nothing to commit", target)
        return False

    rel = os.path.relpath(target.resolve(), repo_path)
    if not status_porcelain(repo_path, rel):
        return False

    _run_git("add", "--", rel, cwd=repo_path)
    _run_git("commit", "-m", message, "--", rel, cwd=repo_path)
    logger.info("Committed %s", rel)
    return True
