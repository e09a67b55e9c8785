"""Loop notification sinks: the interface plus the plain console implementation."""

from __future__ import annotations

import sys
import threading
from typing import TextIO

from coralph.schemas import GeneratedTask, IterationRecord, LoopResult, TaskStatus

_RULE = "-" * 60


class LoopEventSink:
    """Receives progress notifications from the loop controller.

    Every hook is a no-op here, so implementations override only what they
    display.
    """

    def loop_started(self, *, max_iterations: int, model: str, agent: str) -> None:
        pass

    def iteration_started(self, iteration: int, max_iterations: int) -> None:
        pass

    def iteration_finished(self, record: IterationRecord) -> None:
        pass

    def signal_detected(self, signal: str, iteration: int) -> None:
        pass

    def signal_overridden(self, signal: str, iteration: int, reason: str) -> None:
        pass

    def tasks_refreshed(self, tasks: list[GeneratedTask]) -> None:
        pass

    def info(self, message: str) -> None:
        pass

    def warning(self, message: str) -> None:
        pass

    def error(self, message: str) -> None:
        pass

    def loop_finished(self, result: LoopResult) -> None:
        pass


class NullSink(LoopEventSink):
    """Discards every notification."""


def summarize_tasks(tasks: list[GeneratedTask]) -> str:
    """One-line status summary, e.g. ``3 tasks: 1 open, 1 in_progress, 1 done``."""
    counts = {status: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status] += 1
    parts = [f"{count} {status.value}" for status, count in counts.items() if count]
    noun = "task" if len(tasks) == 1 else "tasks"
    return f"{len(tasks)} {noun}: " + (", ".join(parts) if parts else "none")


class ConsoleOutput(LoopEventSink):
    """Human-readable output: normal text to *out*, problems to *err*.

    Safe to call from the backlog poller thread while the loop is printing.
    """

    def __init__(
        self,
        out: TextIO | None = None,
        err: TextIO | None = None,
        *,
        show_output: bool = True,
    ) -> None:
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self.show_output = show_output
        self._last_task_summary = ""
        self._lock = threading.RLock()

    def _print(self, text: str = "", *, stream: TextIO | None = None) -> None:
        target = stream or self.out
        with self._lock:
            print(text, file=target, flush=True)

    def loop_started(self, *, max_iterations: int, model: str, agent: str) -> None:
        self._print(f"\n  Coralph loop ({agent}, model={model or 'default'}, max {max_iterations})")

    def iteration_started(self, iteration: int, max_iterations: int) -> None:
        with self._lock:
            self._print(f"\n  {_RULE}")
            self._print(f"  Iteration {iteration}/{max_iterations}")
            self._print(f"  {_RULE}")

    def iteration_finished(self, record: IterationRecord) -> None:
        if record.success:
            if self.show_output and record.output.strip():
                self._print(record.output.rstrip())
        else:
            self._print(record.output, stream=self.err)

    def signal_detected(self, signal: str, iteration: int) -> None:
        self._print(f"\n{signal} detected, stopping.\n")

    def signal_overridden(self, signal: str, iteration: int, reason: str) -> None:
        self._print(f"{signal} signal ignored: {reason}", stream=self.err)

    def tasks_refreshed(self, tasks: list[GeneratedTask]) -> None:
        summary = summarize_tasks(tasks)
        with self._lock:
            if summary == self._last_task_summary:
                return
            self._last_task_summary = summary
            self._print(f"  Backlog: {summary}")

    def info(self, message: str) -> None:
        self._print(message)

    def warning(self, message: str) -> None:
        self._print(f"Warning: {message}", stream=self.err)

    def error(self, message: str) -> None:
        self._print(f"Error: {message}", stream=self.err)

    def loop_finished(self, result: LoopResult) -> None:
        reason = result.stop_reason.value
        if result.signal:
            reason = f"{reason} ({result.signal})"
        self._print(f"\n  Finished after {result.iterations} iteration(s): {reason}")
