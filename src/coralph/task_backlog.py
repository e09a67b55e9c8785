"""Generated task backlog (``generated_tasks.json``).

The loop derives the backlog once from the open issues and then leaves it to
the assistant, which marks tasks ``in_progress``/``done`` as it works.  The
backlog is the loop's record of what is still outstanding, and gates whether a
``COMPLETE`` signal is believed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from coralph.file_cache import FileContentCache
from coralph.file_io import atomic_write_text, read_text_tolerant
from coralph.issues import open_issues, parse_issues
from coralph.schemas import BacklogDocument, GeneratedTask, Issue, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG_FILE = "generated_tasks.json"

_CHECKLIST_RE = re.compile(r"^\s*[-*+]\s+\[(?P<mark>[ xX])\]\s+(?P<text>\S.*?)\s*$", re.MULTILINE)

_STATUS_ALIASES: dict[str, TaskStatus] = {
    "done": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "in_progress": TaskStatus.IN_PROGRESS,
    "inprogress": TaskStatus.IN_PROGRESS,
    "blocked": TaskStatus.BLOCKED,
    "open": TaskStatus.OPEN,
}


class BacklogFormatError(ValueError):
    """Raised when backlog text is not JSON or has an unexpected root shape."""


@dataclass(frozen=True, slots=True)
class ParsedBacklog:
    """Backlog content after parsing; ``shape`` records which root form was seen."""

    shape: Literal["array", "document"]
    tasks: list[GeneratedTask]

    @property
    def open_tasks(self) -> list[GeneratedTask]:
        return [task for task in self.tasks if task.is_open]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def normalize_status(value: Any) -> TaskStatus:
    """Map free-text status onto :class:`TaskStatus`; unknown values are ``open``."""
    if isinstance(value, TaskStatus):
        return value
    text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    return _STATUS_ALIASES.get(text, TaskStatus.OPEN)


def _field(item: dict[str, Any], camel: str, snake: str) -> Any:
    value = item.get(camel)
    if value is None:
        value = item.get(snake)
    return value


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _task_from_item(item: dict[str, Any], sequence: int) -> GeneratedTask:
    task_id = _as_text(item.get("id")).strip() or f"task-{sequence:03d}"
    order = _as_int(item.get("order"))
    return GeneratedTask(
        id=task_id,
        stable_key=_as_text(_field(item, "stableKey", "stable_key")),
        issue_number=_as_int(_field(item, "issueNumber", "issue_number")),
        issue_title=_as_text(_field(item, "issueTitle", "issue_title")),
        title=_as_text(item.get("title")),
        description=_as_text(item.get("description")),
        status=normalize_status(item.get("status")),
        origin=_as_text(item.get("origin")) or "issue",
        order=order if order is not None and order > 0 else sequence,
        sequence=sequence,
    )


def parse_backlog(text: str) -> ParsedBacklog:
    """Parse backlog JSON in either the bare-array or the document form.

    Array entries that are not objects are skipped but still consume a
    sequence number, so generated fallback ids stay stable.
    """
    if not (text or "").strip():
        raise BacklogFormatError("backlog is empty")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise BacklogFormatError(f"backlog is not valid JSON: {exc}") from exc

    shape: Literal["array", "document"]
    if isinstance(data, list):
        shape, items = "array", data
    elif isinstance(data, dict) and isinstance(data.get("tasks"), list):
        shape, items = "document", data["tasks"]
    else:
        raise BacklogFormatError(
            "backlog has an unexpected format; expected an array or an object with a 'tasks' array"
        )

    tasks = [
        _task_from_item(item, sequence)
        for sequence, item in enumerate(items, start=1)
        if isinstance(item, dict)
    ]
    return ParsedBacklog(shape=shape, tasks=tasks)


def has_open_tasks(backlog_json: str) -> bool:
    """Return True when any task is ``open`` or ``in_progress``.

    Unparseable backlog text also returns True: a corrupt backlog must never
    let a ``COMPLETE`` signal through.
    """
    try:
        parsed = parse_backlog(backlog_json)
    except BacklogFormatError as exc:
        logger.warning("Treating unreadable backlog as having open tasks: %s", exc)
        return True
    return bool(parsed.open_tasks)


# ---------------------------------------------------------------------------
# Derivation from issues
# ---------------------------------------------------------------------------

def _checklist_items(body: str) -> list[tuple[str, bool]]:
    return [
        (match.group("text"), match.group("mark").lower() == "x")
        for match in _CHECKLIST_RE.finditer(body or "")
    ]


def derive_tasks(issues: list[Issue]) -> list[GeneratedTask]:
    """Break open issues into tasks, one per checklist item or one per issue."""
    tasks: list[GeneratedTask] = []

    def _add(
        issue: Issue,
        *,
        key: str,
        title: str,
        description: str,
        origin: str,
        done: bool,
    ) -> None:
        sequence = len(tasks) + 1
        tasks.append(
            GeneratedTask(
                id=f"task-{sequence:03d}",
                stable_key=f"issue-{issue.number}:{key}",
                issue_number=issue.number,
                issue_title=issue.title,
                title=title,
                description=description,
                status=TaskStatus.DONE if done else TaskStatus.OPEN,
                origin=origin,
                order=sequence,
                sequence=sequence,
            )
        )

    for issue in open_issues(issues):
        items = _checklist_items(issue.body)
        if not items:
            _add(
                issue,
                key="main",
                title=issue.title or f"Issue #{issue.number}",
                description=issue.body.strip(),
                origin="issue",
                done=False,
            )
            continue
        for index, (text, checked) in enumerate(items, start=1):
            _add(
                issue,
                key=f"item-{index}",
                title=text,
                description=f"Checklist item {index} of issue #{issue.number} ({issue.title})",
                origin="checklist",
                done=checked,
            )
    return tasks


def build_backlog_document(issues: list[Issue]) -> BacklogDocument:
    pending = open_issues(issues)
    return BacklogDocument(source_issue_count=len(pending), tasks=derive_tasks(pending))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def ensure_backlog(
    issues_json: str,
    backlog_path: str | Path,
    *,
    cache: FileContentCache | None = None,
) -> str:
    """Return the backlog JSON, creating the file from *issues_json* if missing.

    An existing backlog is returned exactly as stored; it belongs to the
    assistant once created.  Raises :class:`~coralph.issues.IssuesParseError`
    when the backlog must be derived and the issues are malformed.
    """
    path = Path(backlog_path)
    if cache is not None:
        existing = cache.try_read_text(path)
        if existing.exists:
            return existing.content
    else:
        try:
            return read_text_tolerant(path)
        except FileNotFoundError:
            pass

    document = build_backlog_document(parse_issues(issues_json))
    content = document.to_json()
    atomic_write_text(path, content + "\n")
    if cache is not None:
        cache.invalidate(path)
    logger.info(
        "Generated %d task(s) from %d open issue(s) into %s",
        len(document.tasks),
        document.source_issue_count,
        path,
    )
    return content + "\n"
