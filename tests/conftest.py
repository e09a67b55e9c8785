"""Shared pytest configuration: markers, ordering and loop workspace fixtures."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

SAMPLE_PROMPT = "Work on the next task.\n"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that start real child processes")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


def write_issues(directory: Path, issues: list[dict]) -> Path:
    path = directory / "issues.json"
    path.write_text(json.dumps(issues), encoding="utf-8")
    return path


@pytest.fixture
def loop_workspace(tmp_path: Path) -> Path:
    """A working directory with a prompt and one open issue."""
    (tmp_path / "prompt.md").write_text(SAMPLE_PROMPT, encoding="utf-8")
    write_issues(
        tmp_path,
        [{"number": 1, "title": "Add hello command", "body": "Print hello.", "state": "open"}],
    )
    return tmp_path
