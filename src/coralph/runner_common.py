"""Shared subprocess plumbing for CLI runner implementations."""

from __future__ import annotations

import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from coralph.schemas import AgentEvent

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_MAX_CAPTURED_EVENTS = 20_000
_MAX_CAPTURED_LINES = 20_000
_POLL_SECONDS = 0.25
_COMMAND_LINE_LENGTH_ERROR_CODES = {7, 87, 206}
_COMMAND_LINE_LENGTH_ERROR_SUBSTRINGS = (
    "command line is too long",
    "filename or extension is too long",
    "argument list too long",
)

POSIX_PROMPT_ARG_LIMIT = 60_000
"""Prompts at least this long are sent over stdin instead of argv."""


def _process_isolation_kwargs() -> dict[str, object]:
    """Keep Ctrl+C aimed at the loop from reaching the child directly.

    The loop decides when to stop the assistant (via the cancel event), so the
    child runs in its own process group / session.
    """
    if os.name == "nt":
        flags = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        try:
            return int(float(cleaned)) if cleaned else 0
        except (ValueError, OverflowError):
            return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def is_command_line_too_long_error(exc: BaseException) -> bool:
    """Return True when an exception indicates argv length exceeded OS limits."""
    message = str(exc or "").strip().lower()
    if any(token in message for token in _COMMAND_LINE_LENGTH_ERROR_SUBSTRINGS):
        return True
    for attr_name in ("winerror", "errno"):
        code = getattr(exc, attr_name, None)
        if isinstance(code, int) and code in _COMMAND_LINE_LENGTH_ERROR_CODES:
            return True
    return False


@dataclass(slots=True)
class StreamExecutionResult:
    """Captured output and metadata from a runner subprocess."""

    events: list[AgentEvent]
    stdout_lines: list[str]
    stderr_lines: list[str]
    exit_code: int
    timed_out: bool
    cancelled: bool = False

    @property
    def stdout_text(self) -> str:
        return "\n".join(self.stdout_lines).strip()

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()


def execute_streaming_command(
    *,
    cmd: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    process_name: str,
    parse_stdout_line: Callable[[str], AgentEvent | None] | None = None,
    stdin_text: str | None = None,
    cancel_event: threading.Event | None = None,
) -> StreamExecutionResult:
    """Run a subprocess, streaming its output, until exit, inactivity or cancel.

    ``timeout_seconds`` is an inactivity timeout: it resets every time the
    child writes a line.  ``0`` disables it.  When *parse_stdout_line* is
    given, each stdout line is also parsed into an :class:`AgentEvent`.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **_process_isolation_kwargs(),
    )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError(f"{process_name} subprocess pipes are unexpectedly unavailable")

    events: deque[AgentEvent] = deque(maxlen=_MAX_CAPTURED_EVENTS)
    stdout_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_LINES)
    stderr_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_LINES)
    stream_queue: queue.Queue[tuple[str, str | None]] = queue.Queue()

    def _pump(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                stream_queue.put((stream_name, line.rstrip("\r\n")))
        finally:
            stream_queue.put((stream_name, None))

    def _feed_stdin(stream: Any, text: str) -> None:
        try:
            stream.write(text if text.endswith("\n") else text + "\n")
            stream.flush()
        except OSError:
            logger.debug("%s stdin write failed", process_name)
        finally:
            with suppress(OSError):
                stream.close()

    def _collect(stream_name: str, line: str) -> None:
        if stream_name == "stderr":
            stderr_lines.append(line)
            return
        stdout_lines.append(line)
        if parse_stdout_line is None:
            return
        try:
            event = parse_stdout_line(line)
        except (ValueError, TypeError, KeyError):
            logger.warning("Failed to parse %s output line; keeping raw text", process_name)
            return
        if event is not None:
            events.append(event)

    threads = [
        threading.Thread(target=_pump, args=("stdout", proc.stdout), daemon=True),
        threading.Thread(target=_pump, args=("stderr", proc.stderr), daemon=True),
    ]
    if stdin_text is not None and proc.stdin is not None:
        threads.append(
            threading.Thread(target=_feed_stdin, args=(proc.stdin, stdin_text), daemon=True)
        )
    for thread in threads:
        thread.start()

    inactivity_timeout = timeout_seconds if timeout_seconds > 0 else None
    last_activity = time.monotonic()
    open_streams = {"stdout", "stderr"}
    timed_out = False
    cancelled = False

    try:
        while open_streams:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            if (
                inactivity_timeout is not None
                and time.monotonic() - last_activity >= inactivity_timeout
            ):
                timed_out = True
                break
            try:
                stream_name, line = stream_queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if proc.poll() is not None and not any(t.is_alive() for t in threads[:2]):
                    break
                continue
            if line is None:
                open_streams.discard(stream_name)
                continue
            last_activity = time.monotonic()
            if line:
                _collect(stream_name, line)

        if cancelled or timed_out:
            terminate_process(
                proc,
                process_name=process_name,
                reason="stop request" if cancelled else "inactivity timeout",
            )
        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:  # pragma: no cover - stuck child
            _kill_process(proc)
            proc.wait(timeout=5.0)

        # Lines buffered just before exit.
        while True:
            try:
                stream_name, line = stream_queue.get_nowait()
            except queue.Empty:
                break
            if line:
                _collect(stream_name, line)

        return StreamExecutionResult(
            events=list(events),
            stdout_lines=list(stdout_lines),
            stderr_lines=list(stderr_lines),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
            cancelled=cancelled,
        )
    finally:
        for thread in threads:
            thread.join(timeout=1.0)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None and not stream.closed:
                with suppress(OSError):
                    stream.close()


def terminate_process(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    reason: str,
    grace_seconds: float = 1.5,
) -> None:
    """Ask the child (and its group) to exit, then force-kill if it lingers."""
    if proc.poll() is not None:
        return
    logger.info("Stopping %s (%s)", process_name, reason)
    if os.name != "nt":
        _signal_process_group(proc, signal.SIGTERM)
    with suppress(OSError):
        proc.terminate()
    try:
        proc.wait(timeout=max(0.1, grace_seconds))
        return
    except subprocess.TimeoutExpired:
        logger.warning(
            "%s did not exit after terminate during %s; forcing kill.", process_name, reason
        )
    _kill_process(proc)


def _kill_process(proc: subprocess.Popen[str]) -> None:
    if os.name != "nt":
        _signal_process_group(proc, signal.SIGKILL)
    with suppress(OSError):
        proc.kill()


def _signal_process_group(proc: subprocess.Popen[str], sig: int) -> None:
    pid = int(getattr(proc, "pid", 0) or 0)
    if pid <= 0:
        return
    with suppress(OSError):
        os.killpg(os.getpgid(pid), sig)


def execute_with_prompt_transport(
    *,
    prompt: str,
    process_name: str,
    build_command: Callable[[str | None], list[str]],
    execute: Callable[[list[str], str | None], StreamExecutionResult],
) -> StreamExecutionResult:
    """Pass *prompt* on argv, switching to a side channel when argv would be too long.

    *build_command* receives the prompt, or ``None`` when the prompt travels
    out of band.  *execute* receives the command and the out-of-band text,
    which most runners feed to stdin.
    """
    if len(prompt) >= POSIX_PROMPT_ARG_LIMIT:
        return execute(build_command(None), prompt)
    try:
        return execute(build_command(prompt), None)
    except OSError as exc:
        if not is_command_line_too_long_error(exc):
            raise
        logger.warning(
            "%s argv exceeded command-line limits; retrying with the prompt out of band.",
            process_name,
        )
        return execute(build_command(None), prompt)
