"""Read-only views of the backlog for progress display."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from coralph.console_output import LoopEventSink
from coralph.file_cache import FileContentCache
from coralph.schemas import GeneratedTask, TaskStatus
from coralph.task_backlog import BacklogFormatError, parse_backlog

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TasksSnapshot:
    """Backlog tasks as of one read, or the reason they could not be read."""

    exists: bool
    tasks: tuple[GeneratedTask, ...] = ()
    error: str | None = None

    @property
    def active_index(self) -> int:
        """Index of the first in-progress task, else the first open one, else 0."""
        for wanted in (TaskStatus.IN_PROGRESS, TaskStatus.OPEN):
            for index, task in enumerate(self.tasks):
                if task.status == wanted:
                    return index
        return 0

    @property
    def active_task(self) -> GeneratedTask | None:
        if not self.tasks:
            return None
        task = self.tasks[self.active_index]
        return task if task.is_open else None

    def signature(self) -> tuple[tuple[str, str], ...]:
        return tuple((task.id, task.status.value) for task in self.tasks)


def read_tasks_snapshot(
    path: str | Path,
    cache: FileContentCache | None = None,
) -> TasksSnapshot:
    """Read and parse the backlog at *path* without ever raising on bad content."""
    try:
        if cache is not None:
            read = cache.try_read_text(path)
            if not read.exists:
                return TasksSnapshot(exists=False)
            content = read.content
        else:
            content = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return TasksSnapshot(exists=False)
    except OSError as exc:
        return TasksSnapshot(exists=True, error=str(exc))

    try:
        parsed = parse_backlog(content)
    except BacklogFormatError as exc:
        return TasksSnapshot(exists=True, error=str(exc))
    return TasksSnapshot(exists=True, tasks=tuple(parsed.tasks))


class BacklogPoller:
    """Background thread that reports backlog changes while a turn is running.

    The assistant edits the backlog mid-turn; this surfaces those edits to
    the sink without waiting for the next iteration.  It never writes.
    """

    def __init__(
        self,
        path: str | Path,
        sink: LoopEventSink,
        *,
        cache: FileContentCache | None = None,
        interval_seconds: float = 2.0,
    ) -> None:
        self.path = Path(path)
        self.sink = sink
        self.cache = cache
        self.interval_seconds = max(0.1, float(interval_seconds))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_signature: tuple[tuple[str, str], ...] | None = None

    def poll_once(self) -> bool:
        """Read the backlog and notify the sink if tasks changed; returns True on change."""
        if self.cache is not None:
            self.cache.invalidate(self.path)
        snapshot = read_tasks_snapshot(self.path, self.cache)
        if not snapshot.exists or snapshot.error:
            return False
        signature = snapshot.signature()
        if signature == self._last_signature:
            return False
        self._last_signature = signature
        self.sink.tasks_refreshed(list(snapshot.tasks))
        return True

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.poll_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="backlog-poller", daemon=True)
        self._thread.start()
        logger.debug("Backlog poller started for %s", self.path)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds + 1.0)
            self._thread = None
