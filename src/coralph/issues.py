"""Parsing for the ``issues.json`` snapshot the loop works from."""

from __future__ import annotations

import json

from pydantic import ValidationError

from coralph.schemas import Issue

DEFAULT_ISSUES_FILE = "issues.json"
EMPTY_ISSUES_JSON = "[]"


class IssuesParseError(ValueError):
    """Raised when ``issues.json`` is not a JSON array of issue objects."""


def parse_issues(issues_json: str) -> list[Issue]:
    """Parse an issues snapshot, skipping array entries that are not objects.

    A blank document counts as an empty list.
    """
    if not (issues_json or "").strip():
        return []
    try:
        data = json.loads(issues_json)
    except json.JSONDecodeError as exc:
        raise IssuesParseError(f"issues JSON is not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise IssuesParseError(
            f"issues JSON must be an array of issues, got {type(data).__name__}"
        )

    issues: list[Issue] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            continue
        try:
            issues.append(Issue.model_validate(item))
        except ValidationError as exc:
            raise IssuesParseError(f"issue at index {index} is invalid: {exc}") from exc
    return issues


def open_issues(issues: list[Issue]) -> list[Issue]:
    return [issue for issue in issues if issue.is_open]
