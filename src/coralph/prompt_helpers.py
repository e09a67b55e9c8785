"""Prompt assembly and output interpretation for one loop iteration."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass

from coralph.agent_signals import PROMISE_COMPLETE, find_terminal_signal
from coralph.issues import IssuesParseError, open_issues, parse_issues
from coralph.schemas import PrFeedbackData

EMPTY_PROGRESS_PLACEHOLDER = "(empty)"

_PREAMBLE = (
    "You are running inside a loop. Use the files and repository as your source of truth.",
    f"Stop condition: when everything is done, output EXACTLY: {PROMISE_COMPLETE}.",
)

_PR_MODE_HEADER = (
    "WORKFLOW MODE: PULL REQUEST",
    "You are operating in PR mode: commit your work to a branch named "
    "coralph/issue-<number> and open or update a pull request for it.",
    "Do NOT push directly to main.",
    "Address the reviewer feedback under PR_FEEDBACK before starting new work.",
)

_BACKLOG_GUIDANCE = (
    "This is the generated task backlog (generated_tasks.json). Pick the first task that is "
    "in_progress, otherwise the first open one. Set its status to in_progress when you start "
    "and to done when it is finished."
)

_OUTPUT_RULES = (
    f"- If you are done, output EXACTLY: {PROMISE_COMPLETE}",
    "- Otherwise, output what you changed and what you will do next iteration.",
)


@dataclass(frozen=True, slots=True)
class IssuesCheck:
    """Result of inspecting the issues snapshot for remaining open work."""

    ok: bool
    has_open_issues: bool = False
    error: str | None = None


def _fenced(lang: str, body: str) -> list[str]:
    return [f"```{lang}", body, "```"]


def _feedback_json(pr_feedback: Mapping[int, PrFeedbackData]) -> str:
    payload = {
        str(issue_number): data.model_dump(mode="json", by_alias=True)
        for issue_number, data in sorted(pr_feedback.items())
    }
    return json.dumps(payload, indent=2)


def build_combined_prompt(
    template: str,
    issues_json: str,
    progress_text: str,
    generated_tasks: str | None = None,
    *,
    pr_mode: bool = False,
    pr_feedback: Mapping[int, PrFeedbackData] | None = None,
) -> str:
    """Assemble the full prompt for one assistant turn.

    Section order is fixed: preamble, ``# ISSUES_JSON``, ``# PR_FEEDBACK``
    (PR mode with feedback only), ``# GENERATED_TASKS_JSON`` (when a backlog
    is supplied), ``# PROGRESS_SO_FAR``, ``# INSTRUCTIONS`` and
    ``# OUTPUT_RULES``.
    """
    lines: list[str] = list(_PREAMBLE)
    if pr_mode:
        lines.append("")
        lines.extend(_PR_MODE_HEADER)
    lines.append("")

    lines.append("# ISSUES_JSON")
    lines.extend(_fenced("json", (issues_json or "").strip()))
    lines.append("")

    if pr_mode and pr_feedback:
        lines.append("# PR_FEEDBACK")
        lines.extend(_fenced("json", _feedback_json(pr_feedback)))
        lines.append("")

    if generated_tasks is not None and generated_tasks.strip():
        lines.append("# GENERATED_TASKS_JSON")
        lines.append(_BACKLOG_GUIDANCE)
        lines.extend(_fenced("json", generated_tasks.strip()))
        lines.append("")

    progress = (progress_text or "").strip()
    lines.append("# PROGRESS_SO_FAR")
    lines.extend(_fenced("text", progress or EMPTY_PROGRESS_PLACEHOLDER))
    lines.append("")

    lines.append("# INSTRUCTIONS")
    lines.append((template or "").strip())
    lines.append("")

    lines.append("# OUTPUT_RULES")
    lines.extend(_OUTPUT_RULES)
    return "\n".join(lines)


def try_get_has_open_issues(issues_json: str) -> IssuesCheck:
    """Report whether *issues_json* holds any open issue.

    Issues without a ``state`` field count as open.  Parse failures are
    returned as ``ok=False`` with a message rather than raised.
    """
    try:
        issues = parse_issues(issues_json)
    except IssuesParseError as exc:
        return IssuesCheck(ok=False, error=str(exc))
    return IssuesCheck(ok=True, has_open_issues=bool(open_issues(issues)))


def try_get_terminal_signal(output: str | None) -> str | None:
    """Return the terminal token in assistant *output*, or ``None``."""
    return find_terminal_signal(output)
