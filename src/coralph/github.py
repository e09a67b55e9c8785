"""GitHub glue built on the ``gh`` CLI: issue snapshots and PR feedback."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from coralph.file_cache import FileContentCache
from coralph.file_io import atomic_write_text
from coralph.git_tools import GitError, parse_github_url, remote_url
from coralph.schemas import PrFeedbackComment, PrFeedbackData

logger = logging.getLogger(__name__)

ISSUE_FIELDS = "number,title,body,url,state,labels,comments"
DEFAULT_ISSUE_LIMIT = 200
DEFAULT_MENTION = "@coralph"
PR_BRANCH_PREFIX = "coralph/issue-"

_PR_BRANCH_RE = re.compile(rf"^{re.escape(PR_BRANCH_PREFIX)}(?P<issue>\d+)$")

_REVIEW_THREADS_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviewThreads(first: 100) {
        nodes {
          isResolved
          path
          line
          comments(first: 1) { nodes { body author { login } } }
        }
      }
    }
  }
}
"""


class GitHubError(RuntimeError):
    """Raised when a ``gh`` invocation fails or returns unusable output."""


def _run_gh(args: list[str], *, cwd: str | Path = ".", timeout: int = 60) -> str:
    """Run ``gh`` and return stdout."""
    cmd = ["gh", *args]
    logger.debug("gh %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            timeout=timeout,
            env={**os.environ, "GH_PROMPT_DISABLED": "1"},
        )
    except FileNotFoundError as exc:
        raise GitHubError("GitHub CLI 'gh' not found on PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitHubError(f"`gh {' '.join(args[:3])}` timed out after {timeout}s") from exc
    if result.returncode != 0:
        raise GitHubError(
            f"`gh {' '.join(args[:3])}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result.stdout


def _load_json(text: str, what: str) -> Any:
    try:
        return json.loads(text or "null")
    except json.JSONDecodeError as exc:
        raise GitHubError(f"gh returned invalid JSON for {what}: {exc}") from exc


def _repo_args(repo: str | None) -> list[str]:
    return ["--repo", repo] if repo else []


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------

def fetch_open_issues_json(
    repo: str | None = None,
    *,
    cwd: str | Path = ".",
    limit: int = DEFAULT_ISSUE_LIMIT,
) -> str:
    """Return open issues as a pretty-printed JSON array."""
    out = _run_gh(
        ["issue", "list", "--state", "open", "--json", ISSUE_FIELDS, "--limit", str(limit)]
        + _repo_args(repo),
        cwd=cwd,
    )
    data = _load_json(out, "issue list")
    if not isinstance(data, list):
        raise GitHubError("gh issue list did not return a JSON array")
    return json.dumps(data, indent=2)


def refresh_issues_file(
    issues_file: str | Path,
    *,
    repo: str | None = None,
    cwd: str | Path = ".",
    cache: FileContentCache | None = None,
) -> int:
    """Overwrite *issues_file* with a fresh snapshot; returns the issue count."""
    content = fetch_open_issues_json(repo, cwd=cwd)
    path = Path(issues_file)
    atomic_write_text(path, content + "\n")
    if cache is not None:
        cache.invalidate(path)
    count = len(json.loads(content))
    logger.info("Refreshed %s with %d open issue(s)", path, count)
    return count


# ---------------------------------------------------------------------------
# Pull-request feedback
# ---------------------------------------------------------------------------

def _resolve_repo_slug(repo: str | None, cwd: str | Path) -> tuple[str, str]:
    if not repo:
        try:
            parsed = parse_github_url(remote_url(cwd))
        except GitError:
            parsed = None
        if parsed is not None:
            return parsed
    slug = repo or _run_gh(
        ["repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner"], cwd=cwd
    ).strip()
    owner, sep, name = slug.partition("/")
    if not sep or not owner or not name:
        raise GitHubError(f"Cannot determine owner/name from repository '{slug}'")
    return owner, name


def _author_login(node: Any) -> str:
    author = node.get("author") if isinstance(node, dict) else None
    if isinstance(author, dict):
        return str(author.get("login") or "unknown")
    return "unknown"


def _mention_comments(
    pr_number: int, mention: str, repo: str | None, cwd: str | Path
) -> list[PrFeedbackComment]:
    data = _load_json(
        _run_gh(["pr", "view", str(pr_number), "--json", "comments"] + _repo_args(repo), cwd=cwd),
        f"PR #{pr_number} comments",
    )
    comments = data.get("comments") if isinstance(data, dict) else None
    found: list[PrFeedbackComment] = []
    for comment in comments or []:
        body = str(comment.get("body") or "") if isinstance(comment, dict) else ""
        if mention and mention.lower() in body.lower():
            found.append(
                PrFeedbackComment(type="mention", author=_author_login(comment), body=body)
            )
    return found


def _unresolved_threads(
    pr_number: int, owner: str, name: str, cwd: str | Path
) -> list[PrFeedbackComment]:
    data = _load_json(
        _run_gh(
            [
                "api", "graphql",
                "-f", f"query={_REVIEW_THREADS_QUERY}",
                "-F", f"owner={owner}",
                "-F", f"name={name}",
                "-F", f"number={pr_number}",
            ],
            cwd=cwd,
        ),
        f"PR #{pr_number} review threads",
    )
    try:
        threads = data["data"]["repository"]["pullRequest"]["reviewThreads"]["nodes"]
    except (KeyError, TypeError) as exc:
        raise GitHubError(f"Unexpected review thread payload for PR #{pr_number}") from exc

    found: list[PrFeedbackComment] = []
    for thread in threads or []:
        if not isinstance(thread, dict) or thread.get("isResolved"):
            continue
        comments = thread.get("comments")
        nodes = comments.get("nodes") if isinstance(comments, dict) else None
        first = nodes[0] if isinstance(nodes, list) and nodes else None
        if not isinstance(first, dict):
            first = {}
        try:
            found.append(
                PrFeedbackComment(
                    type="unresolved_thread",
                    author=_author_login(first),
                    body=str(first.get("body") or ""),
                    path=thread.get("path"),
                    line=thread.get("line"),
                    is_resolved=False,
                )
            )
        except ValueError as exc:
            raise GitHubError(f"Unexpected review thread in PR #{pr_number}: {exc}") from exc
    return found


def collect_pr_feedback(
    issue_numbers: Iterable[int],
    *,
    repo: str | None = None,
    cwd: str | Path = ".",
    mention: str = DEFAULT_MENTION,
) -> dict[int, PrFeedbackData]:
    """Collect mentions and unresolved review threads on ``coralph/issue-<n>`` PRs.

    Only issues in *issue_numbers* are considered, and PRs without any
    feedback are left out of the result.
    """
    wanted = set(issue_numbers)
    if not wanted:
        return {}
    prs = _load_json(
        _run_gh(
            ["pr", "list", "--state", "open", "--json", "number,headRefName", "--limit", "100"]
            + _repo_args(repo),
            cwd=cwd,
        ),
        "pr list",
    )
    if not isinstance(prs, list):
        raise GitHubError("gh pr list did not return a JSON array")
    owner, name = _resolve_repo_slug(repo, cwd)

    feedback: dict[int, PrFeedbackData] = {}
    for pr in prs:
        if not isinstance(pr, dict):
            continue
        branch = str(pr.get("headRefName") or "")
        match = _PR_BRANCH_RE.match(branch)
        if not match or int(match.group("issue")) not in wanted:
            continue
        issue_number = int(match.group("issue"))
        try:
            pr_number = int(pr["number"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GitHubError(f"gh pr list entry for {branch} has no usable number") from exc
        items = _mention_comments(pr_number, mention, repo, cwd) + _unresolved_threads(
            pr_number, owner, name, cwd
        )
        if items:
            feedback[issue_number] = PrFeedbackData(
                issue_number=issue_number,
                pr_number=pr_number,
                pr_branch=branch,
                feedback=tuple(items),
            )
    logger.info("Collected PR feedback for %d issue(s)", len(feedback))
    return feedback
