"""Loop controller.

:class:`LoopController` drives assistant turns against a repository until the
assistant reports a terminal signal, the iteration budget runs out, or the
run is cancelled.  Before every turn it re-reads the files the assistant may
have edited (progress notes, issues, generated backlog) so each prompt
reflects the latest state on disk.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections.abc import Callable, Mapping
from pathlib import Path

from coralph.agent_runner import AgentRunner, TurnCancelled
from coralph.agent_signals import COMPLETE, NO_OPEN_ISSUES, contains_hang_on_signal
from coralph.backlog_cleanup import should_delete_for_terminal_signal, try_delete
from coralph.config import LoopOptions
from coralph.console_output import LoopEventSink, NullSink
from coralph.file_cache import FileContentCache
from coralph.git_tools import GitError, commit_progress_if_needed
from coralph.github import GitHubError, collect_pr_feedback, refresh_issues_file
from coralph.issues import EMPTY_ISSUES_JSON, IssuesParseError, open_issues, parse_issues
from coralph.prompt_helpers import (
    build_combined_prompt,
    try_get_has_open_issues,
    try_get_terminal_signal,
)
from coralph.schemas import IterationRecord, LoopResult, PrFeedbackData, StopReason
from coralph.task_backlog import BacklogFormatError, ensure_backlog, has_open_tasks, parse_backlog
from coralph.tasks_snapshot import BacklogPoller

logger = logging.getLogger(__name__)

INIT_HINT = "Run 'coralph init' in this repository to create it."
COMPLETE_IGNORED_REASON = "open tasks remain in the backlog"

ProgressCommitter = Callable[[Path, Path], bool]
IssueRefresher = Callable[[LoopOptions, FileContentCache], object]
FeedbackCollector = Callable[[LoopOptions, list[int]], Mapping[int, PrFeedbackData]]


class LoopError(RuntimeError):
    """A failure that ends the loop with a fatal error."""


# ---------------------------------------------------------------------------
# Default collaborators
# ---------------------------------------------------------------------------

def _default_commit(progress_file: Path, repo: Path) -> bool:
    return commit_progress_if_needed(progress_file, repo)


def _default_refresh(options: LoopOptions, cache: FileContentCache) -> object:
    return refresh_issues_file(
        options.issues_path,
        repo=options.repo,
        cwd=options.resolve("."),
        cache=cache,
    )


def _default_feedback(
    options: LoopOptions, issue_numbers: list[int]
) -> Mapping[int, PrFeedbackData]:
    return collect_pr_feedback(
        issue_numbers,
        repo=options.repo,
        cwd=options.resolve("."),
        mention=options.pr_mention,
    )


def _utc_now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class LoopController:
    """Runs the iterate / interpret / stop cycle.

    Parameters
    ----------
    options:
        Resolved :class:`LoopOptions`.
    runner:
        Assistant runner; only :meth:`AgentRunner.run_turn` is used.
    cache:
        Shared file cache.  A private one is created when omitted.
    sink:
        Receives progress notifications (console, event stream...).
    cancel_event:
        Set it to stop the loop; the running turn is interrupted too.
    commit_progress:
        ``(progress_file, repo_root) -> committed`` called on a terminal
        stop.  Pass ``None`` to use git; disable via ``options.commit_progress``.
    refresh_issues:
        Called once at startup when ``options.refresh_issues`` is set.
    pr_feedback:
        Called every iteration in PR mode with the open issue numbers.
    """

    def __init__(
        self,
        options: LoopOptions,
        runner: AgentRunner,
        *,
        cache: FileContentCache | None = None,
        sink: LoopEventSink | None = None,
        cancel_event: threading.Event | None = None,
        commit_progress: ProgressCommitter | None = None,
        refresh_issues: IssueRefresher | None = None,
        pr_feedback: FeedbackCollector | None = None,
    ) -> None:
        self.options = options
        self.runner = runner
        self.cache = cache if cache is not None else FileContentCache()
        self.sink = sink or NullSink()
        self.cancel_event = cancel_event or threading.Event()
        self.commit_progress = commit_progress or _default_commit
        self.refresh_issues = refresh_issues or _default_refresh
        self.pr_feedback = pr_feedback or _default_feedback

        self.repo_root = options.resolve(".")
        self.prompt_path = options.prompt_path
        self.progress_path = options.progress_path
        self.issues_path = options.issues_path
        self.backlog_path = options.backlog_path
        self.records: list[IterationRecord] = []

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self) -> LoopResult:
        """Run the loop to completion and return its outcome."""
        started_at = _utc_now()
        self.records = []
        logger.info(
            "Starting loop: agent=%s, model=%s, max_iterations=%d, cwd=%s",
            self.options.agent,
            self.options.effective_model or "default",
            self.options.max_iterations,
            self.repo_root,
        )
        self.sink.loop_started(
            max_iterations=self.options.max_iterations,
            model=self.options.effective_model,
            agent=self.options.agent,
        )

        poller: BacklogPoller | None = None
        if self.options.watch_tasks:
            poller = BacklogPoller(self.backlog_path, self.sink, cache=self.cache)
            poller.start()

        error: str | None = None
        try:
            stop_reason, signal = self._run()
        except (LoopError, OSError) as exc:
            stop_reason, signal, error = StopReason.FATAL_ERROR, None, str(exc)
            logger.error("Loop failed: %s", exc)
            self.sink.error(error)
        except Exception as exc:  # collaborator bugs end the run as a fatal error
            stop_reason, signal = StopReason.FATAL_ERROR, None
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Loop failed unexpectedly")
            self.sink.error(error)
        finally:
            if poller is not None:
                poller.stop()

        result = LoopResult(
            stop_reason=stop_reason,
            signal=signal,
            iterations=len(self.records),
            records=list(self.records),
            error=error,
            started_at=started_at,
            finished_at=_utc_now(),
        )
        logger.info("Loop finished: %s (%d iteration(s))", stop_reason.value, result.iterations)
        self.sink.loop_finished(result)
        return result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _run(self) -> tuple[StopReason, str | None]:
        if self.options.refresh_issues:
            self._refresh_issues()
        template = self._read_prompt_template()

        check = try_get_has_open_issues(self._read_issues())
        if not check.ok:
            raise LoopError(f"Could not parse {self.issues_path.name}: {check.error}")
        if not check.has_open_issues:
            logger.info("%s: nothing to do", NO_OPEN_ISSUES)
            self.sink.info(NO_OPEN_ISSUES)
            self._apply_cleanup(NO_OPEN_ISSUES)
            return StopReason.TERMINAL_SIGNAL, NO_OPEN_ISSUES

        max_iterations = self.options.max_iterations
        for iteration in range(1, max_iterations + 1):
            if self.cancel_event.is_set():
                return self._cancelled(iteration)

            logger.info("---- Iteration %d / %d ----", iteration, max_iterations)
            self.sink.iteration_started(iteration, max_iterations)
            prompt = self._prepare_prompt(template)
            if self.cancel_event.is_set():
                return self._cancelled(iteration)

            try:
                record = self._run_turn(iteration, prompt)
            except TurnCancelled:
                return self._cancelled(iteration)
            self.records.append(record)
            if self.cancel_event.is_set():
                self.sink.iteration_finished(record)
                return self._cancelled(iteration)

            if contains_hang_on_signal(record.output):
                logger.warning("Assistant raised HANG_ON_A_SECOND at iteration %d", iteration)
                self.sink.warning("The assistant asked for attention (HANG_ON_A_SECOND).")

            signal = try_get_terminal_signal(record.output)
            record.signal = signal
            if signal is None:
                self.sink.iteration_finished(record)
                continue

            if signal == COMPLETE and self._backlog_has_open_tasks():
                record.signal_overridden = True
                logger.warning(
                    "COMPLETE signal ignored at iteration %d: %s (%s)",
                    iteration,
                    COMPLETE_IGNORED_REASON,
                    self.backlog_path.name,
                )
                self.sink.iteration_finished(record)
                self.sink.signal_overridden(signal, iteration, COMPLETE_IGNORED_REASON)
                continue

            logger.info("%s detected at iteration %d, stopping loop", signal, iteration)
            self.sink.iteration_finished(record)
            self.sink.signal_detected(signal, iteration)
            self._commit_progress()
            self._apply_cleanup(signal)
            return StopReason.TERMINAL_SIGNAL, signal

        logger.info("Max iterations reached; keeping backlog for resume")
        self.sink.info("Max iterations reached; keeping the backlog so the next run can resume.")
        return StopReason.MAX_ITERATIONS, None

    def _cancelled(self, iteration: int) -> tuple[StopReason, str | None]:
        logger.warning("Loop cancelled at iteration %d", iteration)
        self.sink.warning("Cancelled.")
        return StopReason.CANCELLED, None

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _refresh_issues(self) -> None:
        try:
            self.refresh_issues(self.options, self.cache)
        except (GitHubError, OSError) as exc:
            raise LoopError(f"Failed to refresh issues: {exc}") from exc
        self.cache.invalidate(self.issues_path)

    def _read_prompt_template(self) -> str:
        read = self.cache.try_read_text(self.prompt_path)
        if not read.exists:
            raise LoopError(f"Prompt file not found: {self.prompt_path}. {INIT_HINT}")
        return read.content

    def _read_issues(self) -> str:
        read = self.cache.try_read_text(self.issues_path)
        return read.content if read.exists else EMPTY_ISSUES_JSON

    def _read_progress(self) -> str:
        read = self.cache.try_read_text(self.progress_path)
        return read.content if read.exists else ""

    def _prepare_prompt(self, template: str) -> str:
        self.cache.invalidate_many([self.progress_path, self.issues_path, self.backlog_path])
        progress = self._read_progress()
        issues = self._read_issues()
        try:
            backlog = ensure_backlog(issues, self.backlog_path, cache=self.cache)
        except IssuesParseError as exc:
            raise LoopError(f"Could not parse {self.issues_path.name}: {exc}") from exc
        self._report_tasks(backlog)

        feedback = self._collect_feedback(issues) if self.options.pr_mode else None
        return build_combined_prompt(
            template,
            issues,
            progress,
            backlog,
            pr_mode=self.options.pr_mode,
            pr_feedback=feedback,
        )

    def _report_tasks(self, backlog: str) -> None:
        try:
            parsed = parse_backlog(backlog)
        except BacklogFormatError as exc:
            logger.warning("Backlog %s is not readable: %s", self.backlog_path.name, exc)
            return
        self.sink.tasks_refreshed(parsed.tasks)

    def _collect_feedback(self, issues_json: str) -> Mapping[int, PrFeedbackData] | None:
        try:
            numbers = [
                issue.number
                for issue in open_issues(parse_issues(issues_json))
                if issue.number is not None
            ]
            return self.pr_feedback(self.options, numbers)
        except (GitHubError, IssuesParseError, OSError) as exc:
            logger.warning("Could not collect PR feedback: %s", exc)
            self.sink.warning(f"Could not collect PR feedback: {exc}")
            return None

    def _run_turn(self, iteration: int, prompt: str) -> IterationRecord:
        try:
            output = self.runner.run_turn(prompt, cancel_event=self.cancel_event)
        except TurnCancelled:
            raise
        except Exception as exc:  # runner failures never end the loop
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Iteration %d failed", iteration)
            return IterationRecord(
                iteration=iteration,
                success=False,
                output=f"ERROR: {error}",
                error=error,
            )
        logger.info("Iteration %d completed", iteration)
        return IterationRecord(iteration=iteration, success=True, output=output or "")

    def _backlog_has_open_tasks(self) -> bool:
        """Re-read the backlog from disk; a missing backlog has no open tasks."""
        self.cache.invalidate(self.backlog_path)
        try:
            read = self.cache.try_read_text(self.backlog_path)
        except OSError as exc:
            logger.warning("Could not read backlog %s: %s", self.backlog_path, exc)
            return True
        if not read.exists:
            return False
        return has_open_tasks(read.content)

    def _commit_progress(self) -> None:
        if not self.options.commit_progress:
            return
        try:
            self.commit_progress(self.progress_path, self.repo_root)
        except (GitError, OSError) as exc:
            logger.warning("Could not commit progress: %s", exc)
            self.sink.warning(f"Could not commit {self.progress_path.name}: {exc}")

    def _apply_cleanup(self, signal: str) -> None:
        if not should_delete_for_terminal_signal(signal):
            return
        deleted, error = try_delete(self.backlog_path, self.cache)
        if error is not None:
            self.sink.warning(f"Could not delete {self.backlog_path.name}: {error}")
        elif deleted:
            logger.info("Removed %s after %s", self.backlog_path.name, signal)
