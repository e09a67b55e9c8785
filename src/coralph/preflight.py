"""Readiness checks run before the loop starts."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from coralph.config import LoopOptions
from coralph.git_tools import is_git_repo

#: Default executable for each registered assistant.
DEFAULT_AGENT_BINARIES: dict[str, str] = {
    "copilot": "copilot",
    "claude_code": "claude",
}

_INIT_HINT = "Run 'coralph init' to create it."


@dataclass(frozen=True)
class PreflightCheck:
    """A single readiness check result."""

    key: str
    label: str
    status: str
    detail: str
    hint: str = ""


@dataclass(frozen=True)
class PreflightReport:
    """All checks for one run, plus pass/warn/fail counts."""

    checks: list[PreflightCheck]
    working_dir: str

    @property
    def summary(self) -> dict[str, int]:
        counts = {"pass": 0, "warn": 0, "fail": 0}
        for check in self.checks:
            if check.status in counts:
                counts[check.status] += 1
        return counts

    @property
    def ready(self) -> bool:
        return self.summary["fail"] == 0

    def failure_messages(self) -> list[str]:
        return [
            f"{check.label}: {check.hint or check.detail}"
            for check in self.checks
            if check.status == "fail"
        ]

    def warning_messages(self) -> list[str]:
        return [
            f"{check.label}: {check.detail}" for check in self.checks if check.status == "warn"
        ]


def binary_exists(binary: str) -> bool:
    """Return ``True`` when an executable exists for *binary*."""
    binary = os.path.expandvars(os.path.expanduser(str(binary or "").strip()))
    if not binary:
        return False
    candidate = Path(binary)
    try:
        if candidate.is_file():
            return os.access(candidate, os.X_OK)
    except OSError:
        return False
    return shutil.which(binary) is not None


def agent_binary(options: LoopOptions) -> str:
    return options.agent_binary or DEFAULT_AGENT_BINARIES.get(options.agent, options.agent)


def build_preflight_report(options: LoopOptions) -> PreflightReport:
    """Check files, repository and tools needed by *options*.

    Missing prompt or agent binary fail the run.  Everything else only warns:
    the issues file can be fetched with ``--refresh-issues`` and progress is
    created on first write.
    """
    checks: list[PreflightCheck] = []
    working_dir = Path(options.working_dir).expanduser().resolve()

    if working_dir.is_dir():
        checks.append(PreflightCheck("working_dir", "Working directory", "pass", str(working_dir)))
    else:
        checks.append(
            PreflightCheck(
                "working_dir",
                "Working directory",
                "fail",
                f"Not a directory: {working_dir}",
                "Pass an existing directory with --working-dir.",
            )
        )

    prompt = options.prompt_path
    if prompt.is_file():
        checks.append(PreflightCheck("prompt_file", "Prompt file", "pass", str(prompt)))
    else:
        checks.append(
            PreflightCheck(
                "prompt_file",
                "Prompt file",
                "fail",
                f"Prompt file not found: {prompt}",
                _INIT_HINT,
            )
        )

    issues = options.issues_path
    if issues.is_file():
        checks.append(PreflightCheck("issues_file", "Issues file", "pass", str(issues)))
    elif options.refresh_issues:
        checks.append(
            PreflightCheck(
                "issues_file", "Issues file", "pass", f"{issues} will be fetched from GitHub"
            )
        )
    else:
        checks.append(
            PreflightCheck(
                "issues_file",
                "Issues file",
                "warn",
                f"{issues} not found; the loop will see no issues",
                "Use --refresh-issues or run 'coralph init'.",
            )
        )

    if working_dir.is_dir() and is_git_repo(working_dir):
        checks.append(PreflightCheck("git_repo", "Git repository", "pass", str(working_dir)))
    else:
        checks.append(
            PreflightCheck(
                "git_repo",
                "Git repository",
                "warn",
                "Not inside a git repository; progress will not be committed",
                "Run 'git init' first.",
            )
        )

    binary = agent_binary(options)
    if binary_exists(binary):
        checks.append(PreflightCheck("agent_binary", "Agent binary", "pass", binary))
    else:
        checks.append(
            PreflightCheck(
                "agent_binary",
                "Agent binary",
                "fail",
                f"'{binary}' not found on PATH",
                f"Install the {options.agent} CLI or pass --agent-binary.",
            )
        )

    if options.refresh_issues or options.pr_mode:
        if binary_exists("gh"):
            checks.append(PreflightCheck("gh_cli", "GitHub CLI", "pass", "gh"))
        else:
            checks.append(
                PreflightCheck(
                    "gh_cli",
                    "GitHub CLI",
                    "fail",
                    "'gh' not found on PATH",
                    "Install the GitHub CLI (https://cli.github.com) and run 'gh auth login'.",
                )
            )

    return PreflightReport(checks=checks, working_dir=str(working_dir))
