"""``coralph init``: scaffold the files a loop needs in a repository."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from coralph.config import DEFAULT_CONFIG_FILE, LoopOptions
from coralph.file_io import atomic_write_text

logger = logging.getLogger(__name__)

GITIGNORE_BLOCK_START = "# Coralph loop artifacts (managed)"
GITIGNORE_BLOCK_END = "# End Coralph loop artifacts"

SAMPLE_ISSUES = [
    {
        "number": 101,
        "title": "Sample: Add hello command",
        "body": (
            "Add a new CLI command `hello` that prints `hello` and exits.\n\n"
            "- [ ] Implement the command\n- [ ] Add usage docs"
        ),
        "url": "https://example.invalid/issues/101",
        "labels": [],
        "comments": [],
    },
    {
        "number": 102,
        "title": "Sample: Fix typo in README",
        "body": "Fix a typo in the README.\n\n- [ ] Locate the typo\n- [ ] Correct it",
        "url": "https://example.invalid/issues/102",
        "labels": [],
        "comments": [],
    },
]

CORE_PROMPT = """\
# ISSUES

The issues JSON at the start of this prompt lists the repository's issues. Only
OPEN issues matter.

GENERATED_TASKS_JSON splits the open issues into small tasks. It is the backlog
for this loop and lives in generated_tasks.json.

If there are no open issues, output "NO_OPEN_ISSUES" and stop.

# TASK SELECTION

Pick the first task whose status is `in_progress`, otherwise the first `open`
one. Prefer critical bug fixes, then thin end-to-end slices of new features,
then polish, then refactors.

If no open or in-progress tasks remain, output "ALL_TASKS_COMPLETE" and stop.

# BEFORE YOU START

1. Check the issue is still open (`gh issue view <number> --json state`).
2. Check recent commits and progress.txt in case the work is already done.
3. Mark the task `in_progress` in generated_tasks.json.

# EXECUTION

Explore the code you need, then complete the task. If it turns out to be much
larger than expected, output "HANG_ON_A_SECOND", do the smallest useful piece,
and describe the rest.

When the task is finished, mark it `done` in generated_tasks.json.

{feedback_loops}
# PROGRESS

Append an entry to progress.txt:

```markdown
## [Date] - [Issue number]

- What was implemented
- Files changed
- Learnings and gotchas
```

# COMMIT

Commit your changes, including progress.txt, with a conventional commit message.

# CLOSE THE ISSUE

When every task of an issue is done, comment on the issue with a summary of the
change (`gh issue comment <number> --body-file <file>`) and close it
(`gh issue close <number>`).

# RULES

- Work on ONE generated task per iteration.
- Do not output COMPLETE after finishing a single task; the loop continues.
- Only output <promise>COMPLETE</promise> when every task in
  GENERATED_TASKS_JSON is done and progress.txt is committed.
- If unsure whether everything is done, do not output COMPLETE.
"""

_FEEDBACK_LOOPS: dict[str, list[str]] = {
    "python": ["`pytest` to run the tests", "`ruff check .` to check code quality"],
    "javascript": ["`npm test` to run the tests", "`npm run lint` to check code quality"],
    "go": ["`go test ./...` to run the tests", "`go vet ./...` to check code quality"],
    "rust": ["`cargo test` to run the tests", "`cargo clippy -- -D warnings` for lints"],
    "dotnet": ["`dotnet build` to run the build", "`dotnet test` to run the tests"],
}

_PROJECT_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("javascript", ("package.json",)),
    ("python", ("pyproject.toml", "setup.py", "requirements.txt")),
    ("go", ("go.mod",)),
    ("rust", ("Cargo.toml",)),
)


@dataclass
class InitReport:
    """What ``init`` did, one line per file, plus any failures."""

    messages: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def detect_project_type(repo_root: Path) -> str | None:
    for project_type, markers in _PROJECT_MARKERS:
        if any((repo_root / marker).is_file() for marker in markers):
            return project_type
    if any(repo_root.glob("*.sln")) or any(repo_root.glob("*.csproj")):
        return "dotnet"
    return None


def render_prompt(project_type: str | None) -> str:
    loops = _FEEDBACK_LOOPS.get(project_type or "")
    section = ""
    if loops:
        lines = ["# FEEDBACK LOOPS", "", "Before committing, run:", ""]
        lines.extend(f"- {item}" for item in loops)
        section = "\n".join(lines) + "\n\n"
    return CORE_PROMPT.format(feedback_loops=section)


# ---------------------------------------------------------------------------
# .gitignore managed block
# ---------------------------------------------------------------------------

def _gitignore_entry(repo_root: Path, path: str) -> str | None:
    """Return *path* relative to the repo with forward slashes, or None if outside it."""
    if not path.strip():
        return None
    full = Path(path) if Path(path).is_absolute() else repo_root / path
    relative = os.path.relpath(os.path.abspath(full), os.path.abspath(repo_root))
    if relative.startswith("..") or os.path.isabs(relative):
        return None
    return relative.replace("\\", "/")


def gitignore_entries(repo_root: Path, options: LoopOptions) -> list[str]:
    entries: list[str] = []
    for candidate in (".coralph/", options.issues_file, options.backlog_file):
        entry = candidate if candidate.endswith("/") else _gitignore_entry(repo_root, candidate)
        if entry and entry not in entries:
            entries.append(entry)
    return entries


def merge_managed_block(existing: str, entries: list[str]) -> str:
    """Insert or replace the managed block in .gitignore content."""
    block = "\n".join([GITIGNORE_BLOCK_START, *entries, GITIGNORE_BLOCK_END]) + "\n"
    start = existing.find(GITIGNORE_BLOCK_START)
    end = existing.find(GITIGNORE_BLOCK_END)
    if start >= 0 and end > start:
        line_end = existing.find("\n", end)
        replace_end = line_end + 1 if line_end >= 0 else len(existing)
        return (existing[:start] + block + existing[replace_end:]).rstrip() + "\n"
    if not existing.strip():
        return block
    return existing.rstrip() + "\n\n" + block


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

_CONFIG_TEMPLATE_FIELDS = {
    "max_iterations",
    "model",
    "agent",
    "prompt_file",
    "progress_file",
    "issues_file",
    "backlog_file",
    "pr_mode",
}


def _default_config_json() -> str:
    return LoopOptions().model_dump_json(indent=2, include=_CONFIG_TEMPLATE_FIELDS) + "\n"


def _ensure_file(
    report: InitReport,
    path: Path,
    build: Callable[[], str],
    *,
    force: bool = False,
) -> None:
    if path.exists() and not force:
        report.messages.append(f"{path.name} already exists, skipping.")
        return
    try:
        atomic_write_text(path, build())
    except OSError as exc:
        report.errors.append(f"Failed to write {path.name}: {exc}")
        return
    report.messages.append(f"Created {path.name}")


def run_init(
    repo_root: str | Path,
    options: LoopOptions | None = None,
    *,
    force: bool = False,
) -> InitReport:
    """Create prompt, sample issues, progress, config and .gitignore entries.

    Existing files are left alone unless *force* is set (the .gitignore block
    is always refreshed in place).
    """
    root = Path(repo_root).resolve()
    options = options or LoopOptions(working_dir=str(root))
    report = InitReport()
    project_type = detect_project_type(root)
    logger.info("Initializing %s (project type: %s)", root, project_type or "unknown")

    _ensure_file(
        report, options.prompt_path, lambda: render_prompt(project_type), force=force
    )
    _ensure_file(
        report,
        options.issues_path,
        lambda: json.dumps(SAMPLE_ISSUES, indent=2) + "\n",
        force=force,
    )
    _ensure_file(report, options.progress_path, lambda: "")
    _ensure_file(report, root / DEFAULT_CONFIG_FILE, _default_config_json, force=force)

    gitignore = root / ".gitignore"
    try:
        existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        merged = merge_managed_block(existing, gitignore_entries(root, options))
        if merged == existing:
            report.messages.append(".gitignore already lists Coralph artifacts, skipping.")
        else:
            atomic_write_text(gitignore, merged)
            report.messages.append(
                "Updated .gitignore" if existing else "Created .gitignore"
            )
    except OSError as exc:
        report.errors.append(f"Failed to update .gitignore: {exc}")

    return report
