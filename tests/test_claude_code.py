"""Unit tests for the Claude Code runner."""

from __future__ import annotations

import json
from pathlib import Path

from coralph.claude_code import ClaudeCodeRunner, _aggregate, _extract_usage
from coralph.runner_common import POSIX_PROMPT_ARG_LIMIT, StreamExecutionResult
from coralph.schemas import EventKind


def _line(payload: dict) -> str:
    return json.dumps(payload)


def _execution(lines: list[str], *, exit_code: int = 0, **kwargs) -> StreamExecutionResult:
    events = [ev for ev in (ClaudeCodeRunner._parse_line(line) for line in lines) if ev]
    return StreamExecutionResult(
        events=events,
        stdout_lines=lines,
        stderr_lines=kwargs.pop("stderr_lines", []),
        exit_code=exit_code,
        timed_out=kwargs.pop("timed_out", False),
        cancelled=kwargs.pop("cancelled", False),
    )


class TestBuildCommand:
    def test_invalid_timeout_and_max_turns_are_coerced(self):
        runner = ClaudeCodeRunner(timeout="bad", max_turns="7")  # type: ignore[arg-type]
        assert runner.timeout == 0
        assert runner.max_turns == 7

    def test_basic(self):
        cmd = ClaudeCodeRunner()._build_command("hello", None)
        assert Path(cmd[0]).name.lower().startswith("claude")
        assert cmd[1:3] == ["-p", "hello"]
        assert "stream-json" in cmd
        assert "--verbose" in cmd
        assert "--dangerously-skip-permissions" in cmd
        assert "--model" not in cmd

    def test_stdin_transport_omits_prompt(self):
        cmd = ClaudeCodeRunner(skip_permissions=False)._build_command(None, None)
        assert cmd[1] == "-p"
        assert cmd[2] == "--output-format"
        assert "--dangerously-skip-permissions" not in cmd

    def test_model_and_max_turns(self):
        runner = ClaudeCodeRunner(model="  claude-sonnet-4-5  ", max_turns=3)
        cmd = runner._build_command("x", ["--foo"])
        assert cmd[cmd.index("--model") + 1] == "claude-sonnet-4-5"
        assert cmd[cmd.index("--max-turns") + 1] == "3"
        assert cmd[-1] == "--foo"


class TestRun:
    def test_missing_repo_path_fails_without_spawning(self, tmp_path: Path):
        result = ClaudeCodeRunner().run(tmp_path / "missing", "hi")
        assert result.success is False
        assert "does not exist" in result.errors[0]

    def test_long_prompt_goes_over_stdin(self, monkeypatch, tmp_path: Path):
        captured: dict[str, object] = {}

        def _fake_execute(*, cmd, stdin_text, **kwargs):
            captured["cmd"] = cmd
            captured["stdin_text"] = stdin_text
            return _execution([_line({"type": "result", "result": "done"})])

        monkeypatch.setattr("coralph.claude_code.execute_streaming_command", _fake_execute)
        prompt = "x" * POSIX_PROMPT_ARG_LIMIT

        result = ClaudeCodeRunner().run(tmp_path, prompt)

        assert result.success is True
        assert result.final_message == "done"
        assert captured["stdin_text"] == prompt
        assert prompt not in captured["cmd"]

    def test_oserror_is_reported_as_failed_result(self, monkeypatch, tmp_path: Path):
        def _boom(**kwargs):
            raise FileNotFoundError("claude")

        monkeypatch.setattr("coralph.claude_code.execute_streaming_command", _boom)
        result = ClaudeCodeRunner().run(tmp_path, "hi")
        assert result.success is False
        assert "Failed to execute claude" in result.errors[0]


class TestParsing:
    def test_classifies_stream_events(self):
        assistant = ClaudeCodeRunner._parse_line(
            _line(
                {
                    "type": "assistant",
                    "message": {"content": [{"type": "text", "text": "Working on it"}]},
                }
            )
        )
        tool = ClaudeCodeRunner._parse_line(
            _line(
                {
                    "type": "assistant",
                    "message": {"content": [{"type": "tool_use", "name": "Edit"}]},
                }
            )
        )
        error = ClaudeCodeRunner._parse_line(
            _line({"type": "result", "is_error": True, "result": "Overloaded"})
        )
        assert assistant is not None and assistant.kind == EventKind.AGENT_MESSAGE
        assert assistant.text == "Working on it"
        assert tool is not None and tool.kind == EventKind.FILE_CHANGE
        assert error is not None and error.kind == EventKind.ERROR
        assert ClaudeCodeRunner._parse_line("plain text") is None
        assert ClaudeCodeRunner._parse_line("[1, 2]") is None

    def test_result_event_supplies_final_message_and_usage(self):
        execution = _execution(
            [
                _line({"type": "assistant", "message": {"content": "thinking"}}),
                _line(
                    {
                        "type": "result",
                        "result": "ALL_TASKS_COMPLETE",
                        "usage": {"input_tokens": 10, "output_tokens": 5},
                    }
                ),
            ]
        )
        result = ClaudeCodeRunner()._to_result(execution)
        assert result.success is True
        assert result.final_message == "ALL_TASKS_COMPLETE"
        assert result.usage.total_tokens == 15

    def test_falls_back_to_last_assistant_text_then_plain_stdout(self):
        events = [
            ev
            for ev in [
                ClaudeCodeRunner._parse_line(
                    _line({"type": "assistant", "message": {"content": "first"}})
                ),
                ClaudeCodeRunner._parse_line(
                    _line({"type": "assistant", "message": {"content": "second"}})
                ),
            ]
            if ev
        ]
        assert _aggregate(events, 0, "", []).final_message == "second"
        assert _aggregate([], 0, "", ['{"type": "system"}', "COMPLETE"]).final_message == (
            "COMPLETE"
        )

    def test_nonzero_exit_records_error(self):
        result = _aggregate([], 2, "", ["boom"])
        assert result.success is False
        assert result.errors == ["boom"]

    def test_cancel_and_timeout(self):
        runner = ClaudeCodeRunner(timeout=30)
        cancelled = runner._to_result(_execution([], exit_code=-15, cancelled=True))
        timed_out = runner._to_result(_execution([], exit_code=-15, timed_out=True))
        assert cancelled.cancelled is True
        assert timed_out.success is False
        assert "30s" in timed_out.errors[0]

    def test_usage_includes_cache_tokens(self):
        usage = _extract_usage(
            {
                "usage": {
                    "input_tokens": "1,000",
                    "output_tokens": 20,
                    "cache_read_input_tokens": 5,
                },
                "model": "claude-sonnet-4-5",
            }
        )
        assert usage.input_tokens == 1000
        assert usage.total_tokens == 1025
        assert usage.model == "claude-sonnet-4-5"
