"""Tests for the gh-based issue refresh and PR feedback collection."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

import coralph.github as github
from coralph.file_cache import FileContentCache
from coralph.github import GitHubError, collect_pr_feedback, refresh_issues_file


class FakeGh:
    """Answers ``gh`` invocations from a table keyed by the leading arguments."""

    def __init__(self, responses: dict[tuple[str, ...], object]) -> None:
        self.responses = responses
        self.calls: list[list[str]] = []

    def __call__(self, args: list[str], *, cwd=".", timeout: int = 60) -> str:
        self.calls.append(list(args))
        for prefix, response in self.responses.items():
            if tuple(args[: len(prefix)]) == prefix:
                if isinstance(response, Exception):
                    raise response
                return response if isinstance(response, str) else json.dumps(response)
        raise AssertionError(f"unexpected gh call: {args}")


def test_refresh_issues_file_writes_snapshot_and_invalidates_cache(
    monkeypatch, tmp_path: Path
) -> None:
    issues = [{"number": 4, "title": "Bug", "state": "OPEN"}]
    fake = FakeGh({("issue", "list"): issues})
    monkeypatch.setattr(github, "_run_gh", fake)
    target = tmp_path / "issues.json"
    target.write_text("[]", encoding="utf-8")
    cache = FileContentCache(validate_stamps=False)
    cache.try_read_text(target)

    count = refresh_issues_file(target, repo="octo/hello", cwd=tmp_path, cache=cache)

    assert count == 1
    assert json.loads(target.read_text(encoding="utf-8")) == issues
    assert json.loads(cache.try_read_text(target).content) == issues
    assert fake.calls[0][-2:] == ["--repo", "octo/hello"]
    assert "--state" in fake.calls[0]


def test_refresh_rejects_non_array_output(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(github, "_run_gh", FakeGh({("issue", "list"): {"oops": 1}}))
    with pytest.raises(GitHubError, match="array"):
        refresh_issues_file(tmp_path / "issues.json")
    assert not (tmp_path / "issues.json").exists()


def test_refresh_reports_invalid_json(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(github, "_run_gh", FakeGh({("issue", "list"): "not json"}))
    with pytest.raises(GitHubError, match="invalid JSON"):
        refresh_issues_file(tmp_path / "issues.json")


def _threads(*nodes: dict) -> dict:
    return {"data": {"repository": {"pullRequest": {"reviewThreads": {"nodes": list(nodes)}}}}}


class TestCollectPrFeedback:
    def test_collects_mentions_and_unresolved_threads(self, monkeypatch) -> None:
        fake = FakeGh(
            {
                ("pr", "list"): [
                    {"number": 12, "headRefName": "coralph/issue-7"},
                    {"number": 13, "headRefName": "feature/other"},
                    {"number": 14, "headRefName": "coralph/issue-99"},
                ],
                ("pr", "view", "12"): {
                    "comments": [
                        {"author": {"login": "maintainer"}, "body": "@Coralph please rename"},
                        {"author": {"login": "bot"}, "body": "CI passed"},
                    ]
                },
                ("api", "graphql"): _threads(
                    {
                        "isResolved": False,
                        "path": "src/app.py",
                        "line": 10,
                        "comments": {
                            "nodes": [{"body": "Handle None", "author": {"login": "rev"}}]
                        },
                    },
                    {"isResolved": True, "path": "x.py", "line": 1, "comments": {"nodes": []}},
                ),
            }
        )
        monkeypatch.setattr(github, "_run_gh", fake)

        feedback = collect_pr_feedback([7], repo="octo/hello")

        assert list(feedback) == [7]
        data = feedback[7]
        assert (data.pr_number, data.pr_branch) == (12, "coralph/issue-7")
        assert [item.type for item in data.feedback] == ["mention", "unresolved_thread"]
        assert data.feedback[0].author == "maintainer"
        assert data.feedback[1].path == "src/app.py"
        assert data.feedback[1].line == 10

    def test_prs_without_feedback_are_left_out(self, monkeypatch) -> None:
        fake = FakeGh(
            {
                ("pr", "list"): [{"number": 12, "headRefName": "coralph/issue-7"}],
                ("pr", "view", "12"): {"comments": []},
                ("api", "graphql"): _threads(),
            }
        )
        monkeypatch.setattr(github, "_run_gh", fake)
        assert collect_pr_feedback([7], repo="octo/hello") == {}

    def test_no_issue_numbers_means_no_gh_calls(self, monkeypatch) -> None:
        fake = FakeGh({})
        monkeypatch.setattr(github, "_run_gh", fake)
        assert collect_pr_feedback([]) == {}
        assert fake.calls == []

    def test_bad_repo_slug_is_an_error(self, monkeypatch) -> None:
        monkeypatch.setattr(github, "_run_gh", FakeGh({("pr", "list"): []}))
        with pytest.raises(GitHubError, match="owner/name"):
            collect_pr_feedback([1], repo="just-a-name")

    def test_thread_with_null_comment_node_is_tolerated(self, monkeypatch) -> None:
        fake = FakeGh(
            {
                ("pr", "list"): [{"number": 12, "headRefName": "coralph/issue-7"}],
                ("pr", "view", "12"): {"comments": None},
                ("api", "graphql"): _threads(
                    {"isResolved": False, "path": "a.py", "comments": {"nodes": [None]}},
                    {"isResolved": False, "path": "b.py", "comments": None},
                ),
            }
        )
        monkeypatch.setattr(github, "_run_gh", fake)

        feedback = collect_pr_feedback([7], repo="octo/hello")

        assert [item.path for item in feedback[7].feedback] == ["a.py", "b.py"]
        assert all(item.author == "unknown" for item in feedback[7].feedback)

    @pytest.mark.parametrize(
        "pr_list",
        [
            [{"headRefName": "coralph/issue-7"}],
            [{"number": None, "headRefName": "coralph/issue-7"}],
            {"number": 12},
        ],
    )
    def test_malformed_pr_list_is_a_github_error(self, monkeypatch, pr_list) -> None:
        monkeypatch.setattr(github, "_run_gh", FakeGh({("pr", "list"): pr_list}))
        with pytest.raises(GitHubError):
            collect_pr_feedback([7], repo="octo/hello")

    def test_malformed_thread_line_is_a_github_error(self, monkeypatch) -> None:
        fake = FakeGh(
            {
                ("pr", "list"): [{"number": 12, "headRefName": "coralph/issue-7"}],
                ("pr", "view", "12"): {"comments": []},
                ("api", "graphql"): _threads({"isResolved": False, "line": "ten"}),
            }
        )
        monkeypatch.setattr(github, "_run_gh", fake)
        with pytest.raises(GitHubError, match="PR #12"):
            collect_pr_feedback([7], repo="octo/hello")
