"""Pydantic models for structured data shared across the loop."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Issues and generated tasks
# ---------------------------------------------------------------------------

class Issue(BaseModel):
    """One entry of ``issues.json``.  Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    number: int | None = None
    title: str = ""
    body: str = ""
    state: str = "open"
    labels: list[Any] = Field(default_factory=list)
    comments: list[Any] = Field(default_factory=list)
    url: str = ""

    @field_validator("title", "body", "url", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("labels", "comments", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("state", mode="before")
    @classmethod
    def _default_state(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "open"
        return value

    @property
    def is_open(self) -> bool:
        return self.state.strip().lower() == "open"


class TaskStatus(str, Enum):
    """Normalized lifecycle status of a generated task."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class GeneratedTask(BaseModel):
    """A unit of work derived from an issue and tracked in the backlog file.

    Serialized with camelCase keys (``stableKey``, ``issueNumber``...) so the
    file the assistant edits keeps one stable shape.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    stable_key: str = ""
    issue_number: int | None = None
    issue_title: str = ""
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.OPEN
    origin: str = "issue"
    order: int = 0
    sequence: int = Field(default=0, exclude=True)

    @property
    def is_open(self) -> bool:
        """Open and in-progress tasks both count as remaining work."""
        return self.status in (TaskStatus.OPEN, TaskStatus.IN_PROGRESS)


class BacklogDocument(BaseModel):
    """Object form of ``generated_tasks.json`` as written by the loop."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    version: int = 1
    generated_at_utc: str = Field(default_factory=_utc_now)
    source_issue_count: int = 0
    tasks: list[GeneratedTask] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


# ---------------------------------------------------------------------------
# Pull-request feedback
# ---------------------------------------------------------------------------

class PrFeedbackComment(BaseModel):
    """A single piece of reviewer feedback on an open pull request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: str
    author: str
    body: str
    path: str | None = None
    line: int | None = None
    is_resolved: bool = False


class PrFeedbackData(BaseModel):
    """Feedback collected for the PR that tracks one issue."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    issue_number: int
    pr_number: int
    pr_branch: str
    feedback: tuple[PrFeedbackComment, ...] = ()


# ---------------------------------------------------------------------------
# Agent runner results
# ---------------------------------------------------------------------------

class EventKind(str, Enum):
    """Normalized event types parsed from streaming agent output."""

    AGENT_MESSAGE = "agent_message"
    FILE_CHANGE = "file_change"
    COMMAND_EXEC = "command_exec"
    TURN_COMPLETED = "turn.completed"
    ERROR = "error"
    UNKNOWN = "unknown"


class AgentEvent(BaseModel):
    """A single parsed line of agent CLI output."""

    kind: EventKind = EventKind.UNKNOWN
    raw: dict[str, Any] = Field(default_factory=dict)
    text: str | None = None


class UsageInfo(BaseModel):
    """Token usage reported by the agent, when it reports any."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    model: str | None = None


class RunResult(BaseModel):
    """Aggregated result of a single agent CLI invocation."""

    success: bool = False
    exit_code: int = -1
    final_message: str = ""
    events: list[AgentEvent] = Field(default_factory=list)
    usage: UsageInfo = Field(default_factory=UsageInfo)
    errors: list[str] = Field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Loop outcome
# ---------------------------------------------------------------------------

class StopReason(str, Enum):
    """Reason the loop stopped."""
    TERMINAL_SIGNAL = "terminal_signal"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    FATAL_ERROR = "fatal_error"


_EXIT_CODES: dict[StopReason, int] = {
    StopReason.TERMINAL_SIGNAL: 0,
    StopReason.MAX_ITERATIONS: 0,
    StopReason.CANCELLED: 130,
    StopReason.FATAL_ERROR: 1,
}


class IterationRecord(BaseModel):
    """What happened during one assistant turn."""

    iteration: int
    timestamp: str = Field(default_factory=_utc_now)
    success: bool = True
    output: str = ""
    error: str | None = None
    signal: str | None = None
    signal_overridden: bool = False


class LoopResult(BaseModel):
    """Final outcome of a loop run."""

    stop_reason: StopReason
    signal: str | None = None
    iterations: int = 0
    records: list[IterationRecord] = Field(default_factory=list)
    error: str | None = None
    started_at: str = Field(default_factory=_utc_now)
    finished_at: str | None = None

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.stop_reason]
