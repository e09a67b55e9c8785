"""Tests for shared runner helpers."""

from __future__ import annotations

import json
import os
import stat
import sys
import threading
from pathlib import Path

import pytest

import coralph.runner_common as runner_common_module
from coralph.runner_common import (
    StreamExecutionResult,
    coerce_int,
    execute_streaming_command,
    execute_with_prompt_transport,
    is_command_line_too_long_error,
    resolve_binary,
)
from coralph.schemas import AgentEvent, EventKind


def _make_executable(tmp_path: Path, name: str) -> Path:
    path = tmp_path / name
    path.write_text("#!/usr/bin/env sh\nexit 0\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


def _empty_result(**overrides) -> StreamExecutionResult:
    values = {
        "events": [],
        "stdout_lines": [],
        "stderr_lines": [],
        "exit_code": 0,
        "timed_out": False,
    }
    values.update(overrides)
    return StreamExecutionResult(**values)


def test_coerce_int_handles_loose_values() -> None:
    assert coerce_int(float("nan")) == 0
    assert coerce_int("1,234") == 1234
    assert coerce_int("  ") == 0
    assert coerce_int(None) == 0
    assert coerce_int(True) == 1


@pytest.mark.skipif(os.name == "nt", reason="POSIX shell script")
def test_resolve_binary_expands_environment_variables(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CORALPH_TEST_BIN_DIR", str(tmp_path))
    tool = _make_executable(tmp_path, "agent-tool")
    resolved = resolve_binary("$CORALPH_TEST_BIN_DIR/agent-tool")
    assert Path(resolved).resolve() == tool.resolve()


@pytest.mark.skipif(os.name == "nt", reason="POSIX shell script")
def test_resolve_binary_accepts_wrapped_quotes(tmp_path: Path) -> None:
    tool = _make_executable(tmp_path, "agent tool")
    assert Path(resolve_binary(f'"{tool}"')).resolve() == tool.resolve()


def test_process_isolation_kwargs_matches_platform() -> None:
    kwargs = runner_common_module._process_isolation_kwargs()
    if os.name != "nt":
        assert kwargs.get("start_new_session") is True


def test_command_line_too_long_detection() -> None:
    assert is_command_line_too_long_error(OSError(7, "Argument list too long"))
    assert is_command_line_too_long_error(OSError("The command line is too long."))
    assert not is_command_line_too_long_error(OSError("permission denied"))


class TestPromptTransport:
    def test_short_prompt_goes_on_argv(self) -> None:
        calls: list[tuple[list[str], str | None]] = []

        def _execute(cmd: list[str], stdin_text: str | None) -> StreamExecutionResult:
            calls.append((cmd, stdin_text))
            return _empty_result()

        execute_with_prompt_transport(
            prompt="hello",
            process_name="Test Runner",
            build_command=lambda prompt: ["runner", prompt or "-"],
            execute=_execute,
        )
        assert calls == [(["runner", "hello"], None)]

    def test_overflow_error_retries_with_stdin(self) -> None:
        calls: list[tuple[list[str], str | None]] = []

        def _execute(cmd: list[str], stdin_text: str | None) -> StreamExecutionResult:
            calls.append((cmd, stdin_text))
            if len(calls) == 1:
                raise OSError("The command line is too long.")
            return _empty_result()

        execute_with_prompt_transport(
            prompt="payload",
            process_name="Test Runner",
            build_command=lambda prompt: ["runner", prompt or "-"],
            execute=_execute,
        )
        assert calls == [(["runner", "payload"], None), (["runner", "-"], "payload")]

    def test_other_errors_propagate(self) -> None:
        def _execute(cmd: list[str], stdin_text: str | None) -> StreamExecutionResult:
            raise OSError("permission denied")

        with pytest.raises(OSError, match="permission denied"):
            execute_with_prompt_transport(
                prompt="payload",
                process_name="Test Runner",
                build_command=lambda prompt: ["runner", prompt or "-"],
                execute=_execute,
            )


@pytest.mark.slow
class TestExecuteStreamingCommand:
    def test_parses_stdout_and_captures_stderr(self, tmp_path: Path) -> None:
        script = (
            "import json, sys\n"
            "for i in range(3):\n"
            "    print(json.dumps({'i': i}), flush=True)\n"
            "print('warn', file=sys.stderr, flush=True)\n"
        )

        def _parse(line: str) -> AgentEvent:
            payload = json.loads(line)
            return AgentEvent(kind=EventKind.AGENT_MESSAGE, raw=payload, text=str(payload["i"]))

        result = execute_streaming_command(
            cmd=[sys.executable, "-c", script],
            cwd=tmp_path,
            env=dict(os.environ),
            timeout_seconds=30,
            process_name="test-runner",
            parse_stdout_line=_parse,
        )

        assert result.exit_code == 0
        assert [ev.text for ev in result.events] == ["0", "1", "2"]
        assert result.stderr_text == "warn"

    def test_writes_stdin_text(self, tmp_path: Path) -> None:
        script = "import sys\nprint(sys.stdin.read().strip().upper(), flush=True)\n"
        result = execute_streaming_command(
            cmd=[sys.executable, "-c", script],
            cwd=tmp_path,
            env=dict(os.environ),
            timeout_seconds=30,
            process_name="test-runner",
            stdin_text="hello from stdin",
        )
        assert result.stdout_text == "HELLO FROM STDIN"

    def test_cancel_event_stops_the_child(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        try:
            result = execute_streaming_command(
                cmd=[sys.executable, "-c", "import time\ntime.sleep(60)\n"],
                cwd=tmp_path,
                env=dict(os.environ),
                timeout_seconds=0,
                process_name="test-runner",
                cancel_event=cancel,
            )
        finally:
            timer.cancel()
        assert result.cancelled is True
        assert result.exit_code != 0

    def test_inactivity_timeout(self, tmp_path: Path) -> None:
        result = execute_streaming_command(
            cmd=[sys.executable, "-c", "import time\ntime.sleep(60)\n"],
            cwd=tmp_path,
            env=dict(os.environ),
            timeout_seconds=1,
            process_name="test-runner",
        )
        assert result.timed_out is True
