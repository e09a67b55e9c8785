"""Tests for git helpers."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from coralph.git_tools import (
    PROGRESS_COMMIT_MESSAGE,
    GitError,
    _run_git,
    commit_progress_if_needed,
    is_git_repo,
    parse_github_url,
    resolve_repo_root,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _init_repo(path: Path) -> Path:
    for args in (
        ["init", "-q"],
        ["config", "user.email", "loop@example.invalid"],
        ["config", "user.name", "Loop Tests"],
        ["config", "commit.gpgsign", "false"],
    ):
        subprocess.run(["git", *args], cwd=path, check=True, capture_output=True)
    (path / "README.md").write_text("readme\n", encoding="utf-8")
    subprocess.run(["git", "add", "README.md"], cwd=path, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-q", "-m", "init"], cwd=path, check=True, capture_output=True
    )
    return path


def _log_subjects(repo: Path) -> list[str]:
    out = subprocess.run(
        ["git", "log", "--format=%s"], cwd=repo, check=True, capture_output=True, text=True
    ).stdout
    return out.splitlines()


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/octo/hello.git", ("octo", "hello")),
        ("https://token@github.com/octo/hello", ("octo", "hello")),
        ("git@github.com:octo/hello.git", ("octo", "hello")),
        ("ssh://git@github.com/octo/hello", ("octo", "hello")),
        ("https://gitlab.com/octo/hello.git", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_github_url(url: str | None, expected: tuple[str, str] | None) -> None:
    assert parse_github_url(url) == expected


def test_run_git_wraps_missing_executable(tmp_path: Path) -> None:
    with patch("coralph.git_tools.subprocess.run", side_effect=FileNotFoundError("git")):
        with pytest.raises(GitError, match="not found"):
            _run_git("status", cwd=tmp_path)


def test_run_git_raises_on_failure_only_when_checked(tmp_path: Path) -> None:
    failed = SimpleNamespace(returncode=128, stdout="", stderr="fatal: not a git repository")
    with patch("coralph.git_tools.subprocess.run", return_value=failed):
        with pytest.raises(GitError, match="rc=128"):
            _run_git("status", cwd=tmp_path)
        assert _run_git("status", cwd=tmp_path, check=False) is failed


def test_commit_skips_missing_progress_file(tmp_path: Path) -> None:
    with patch("coralph.git_tools._run_git") as run_git:
        assert commit_progress_if_needed(tmp_path / "progress.txt", tmp_path) is False
    run_git.assert_not_called()


@requires_git
@pytest.mark.integration
class TestRealRepository:
    def test_repo_discovery(self, tmp_path: Path) -> None:
        repo = _init_repo(tmp_path)
        (repo / "sub").mkdir()
        assert is_git_repo(repo / "sub")
        assert resolve_repo_root(repo / "sub") == repo.resolve()

    def test_plain_directory_is_not_a_repo(self, tmp_path: Path) -> None:
        assert resolve_repo_root(tmp_path / "missing") is None

    def test_commits_only_the_progress_file(self, tmp_path: Path) -> None:
        repo = _init_repo(tmp_path)
        (repo / "progress.txt").write_text("## Iteration 1\n", encoding="utf-8")
        (repo / "scratch.txt").write_text("unrelated\n", encoding="utf-8")

        assert commit_progress_if_needed("progress.txt", repo) is True

        assert _log_subjects(repo)[0] == PROGRESS_COMMIT_MESSAGE
        status = subprocess.run(
            ["git", "status", "--porcelain"], cwd=repo, capture_output=True, text=True
        ).stdout
        assert "scratch.txt" in status
        assert "progress.txt" not in status

    def test_clean_progress_file_is_not_committed_again(self, tmp_path: Path) -> None:
        repo = _init_repo(tmp_path)
        (repo / "progress.txt").write_text("notes\n", encoding="utf-8")
        assert commit_progress_if_needed(repo / "progress.txt", repo) is True
        assert commit_progress_if_needed(repo / "progress.txt", repo) is False
        assert len(_log_subjects(repo)) == 2
