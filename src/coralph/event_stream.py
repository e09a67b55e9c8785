"""Machine-readable JSONL event stream for wrappers that drive the loop.

The first line is a ``session`` header; every later line is one event::

    {"type": "session", "version": 1, "id": "...", "timestamp": "...", "cwd": "..."}
    {"type": "turn_start", "sessionId": "...", "timestamp": "...", "turn": 1, ...}
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import sys
import threading
import uuid
from pathlib import Path
from typing import Any, TextIO

from coralph.console_output import LoopEventSink
from coralph.schemas import GeneratedTask, IterationRecord, LoopResult

logger = logging.getLogger(__name__)

STREAM_VERSION = 1
_MAX_OUTPUT_CHARS = 20_000


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _truncate(text: str, max_len: int = _MAX_OUTPUT_CHARS) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


class EventStreamSink(LoopEventSink):
    """Writes one JSON object per line to *stream* (stdout by default)."""

    def __init__(
        self,
        stream: TextIO | None = None,
        *,
        session_id: str | None = None,
        cwd: str | Path | None = None,
    ) -> None:
        self.stream = stream or sys.stdout
        self.session_id = session_id or uuid.uuid4().hex
        self._lock = threading.Lock()
        self._write(
            {
                "type": "session",
                "version": STREAM_VERSION,
                "id": self.session_id,
                "timestamp": _now(),
                "cwd": str(Path(cwd or Path.cwd()).resolve()),
            }
        )

    def emit(self, event_type: str, *, turn: int | None = None, **fields: Any) -> None:
        payload: dict[str, Any] = {
            "type": event_type,
            "sessionId": self.session_id,
            "timestamp": _now(),
        }
        if turn is not None:
            payload["turn"] = turn
        payload.update(fields)
        self._write(payload)

    def _write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=False, default=str)
        with self._lock:
            try:
                self.stream.write(line + "\n")
                self.stream.flush()
            except (OSError, ValueError) as exc:
                # Closed pipe on the reader's side; the loop keeps going.
                logger.warning("Could not write event stream line: %s", exc)

    # -- LoopEventSink -----------------------------------------------------

    def loop_started(self, *, max_iterations: int, model: str, agent: str) -> None:
        self.emit("loop_start", maxIterations=max_iterations, model=model, agent=agent)

    def iteration_started(self, iteration: int, max_iterations: int) -> None:
        self.emit("turn_start", turn=iteration, maxIterations=max_iterations)

    def iteration_finished(self, record: IterationRecord) -> None:
        self.emit(
            "turn_end",
            turn=record.iteration,
            success=record.success,
            output=_truncate(record.output),
            error=record.error,
            terminalSignal=record.signal,
        )

    def signal_detected(self, signal: str, iteration: int) -> None:
        self.emit("terminal_signal", turn=iteration, signal=signal)

    def signal_overridden(self, signal: str, iteration: int, reason: str) -> None:
        self.emit("terminal_signal_ignored", turn=iteration, signal=signal, reason=reason)

    def tasks_refreshed(self, tasks: list[GeneratedTask]) -> None:
        self.emit(
            "tasks",
            tasks=[
                {"id": task.id, "title": task.title, "status": task.status.value}
                for task in tasks
            ],
        )

    def info(self, message: str) -> None:
        self.emit("info", message=message)

    def warning(self, message: str) -> None:
        self.emit("warning", message=message)

    def error(self, message: str) -> None:
        self.emit("error", message=message)

    def loop_finished(self, result: LoopResult) -> None:
        self.emit(
            "loop_end",
            stopReason=result.stop_reason.value,
            signal=result.signal,
            iterations=result.iterations,
            exitCode=result.exit_code,
            error=result.error,
        )
