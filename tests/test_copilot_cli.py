"""Unit tests for the Copilot CLI runner."""

from __future__ import annotations

import errno
from pathlib import Path

import pytest

from coralph.agent_runner import AgentRunError
from coralph.copilot_cli import CopilotCliRunner
from coralph.runner_common import POSIX_PROMPT_ARG_LIMIT, StreamExecutionResult


def _execution(stdout: list[str], *, exit_code: int = 0, **kwargs) -> StreamExecutionResult:
    return StreamExecutionResult(
        events=[],
        stdout_lines=stdout,
        stderr_lines=kwargs.get("stderr", []),
        exit_code=exit_code,
        timed_out=kwargs.get("timed_out", False),
        cancelled=kwargs.get("cancelled", False),
    )


def test_build_command_passes_prompt_on_argv() -> None:
    cmd = CopilotCliRunner(model="gpt-5.1-codex")._build_command("do it", None)
    assert Path(cmd[0]).name.lower().startswith("copilot")
    assert cmd[1:3] == ["-p", "do it"]
    assert "--allow-all-tools" in cmd
    assert cmd[cmd.index("--model") + 1] == "gpt-5.1-codex"


def test_build_command_without_tool_approval_or_model() -> None:
    cmd = CopilotCliRunner(allow_all_tools=False)._build_command("x", None)
    assert "--allow-all-tools" not in cmd
    assert "--model" not in cmd


def test_whole_stdout_is_the_turn_output() -> None:
    result = CopilotCliRunner()._to_result(
        _execution(["Implemented the command.", "", "<promise>COMPLETE</promise>"])
    )
    assert result.success is True
    assert result.final_message.endswith("<promise>COMPLETE</promise>")
    assert result.final_message.startswith("Implemented")


def test_nonzero_exit_uses_stderr_as_error() -> None:
    result = CopilotCliRunner()._to_result(
        _execution([], exit_code=1, stderr=["Not authenticated"])
    )
    assert result.success is False
    assert result.errors == ["Not authenticated"]


def test_run_turn_raises_on_failure(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        "coralph.copilot_cli.execute_streaming_command",
        lambda **kwargs: _execution([], exit_code=3),
    )
    runner = CopilotCliRunner(repo_path=tmp_path)
    with pytest.raises(AgentRunError, match="status 3"):
        runner.run_turn("hello")


def _prompt_file_capture(tmp_path: Path, captured: dict[str, object]):
    def _fake(*, cmd, stdin_text, **kwargs):
        captured["cmd"] = cmd
        captured["stdin_text"] = stdin_text
        pointer = cmd[cmd.index("-p") + 1]
        relative = pointer.split("@", 1)[1].split(" ", 1)[0].rstrip(".")
        captured["file"] = tmp_path / relative
        captured["file_text"] = (tmp_path / relative).read_text(encoding="utf-8")
        return _execution(["ok"])

    return _fake


def test_oversized_prompt_goes_through_a_prompt_file(monkeypatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}
    monkeypatch.setattr(
        "coralph.copilot_cli.execute_streaming_command", _prompt_file_capture(tmp_path, captured)
    )
    prompt = "y" * 200_000

    result = CopilotCliRunner().run(tmp_path, prompt)

    assert result.success is True
    assert result.final_message == "ok"
    assert captured["stdin_text"] is None
    assert prompt not in captured["cmd"]
    assert captured["file_text"] == prompt
    assert Path(captured["file"]).parent == tmp_path / ".coralph" / "prompts"
    assert not Path(captured["file"]).exists()


def test_argument_list_too_long_retries_with_prompt_file(monkeypatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}
    via_file = _prompt_file_capture(tmp_path, captured)
    attempts: list[list[str]] = []

    def _fake(*, cmd, stdin_text, **kwargs):
        attempts.append(cmd)
        if len(attempts) == 1:
            raise OSError(errno.E2BIG, "Argument list too long")
        return via_file(cmd=cmd, stdin_text=stdin_text, **kwargs)

    monkeypatch.setattr("coralph.copilot_cli.execute_streaming_command", _fake)

    result = CopilotCliRunner().run(tmp_path, "short but rejected")

    assert result.success is True
    assert "short but rejected" in attempts[0]
    assert captured["file_text"] == "short but rejected"


def test_prompt_below_the_limit_stays_on_argv(monkeypatch, tmp_path: Path) -> None:
    captured: dict[str, object] = {}

    def _fake(*, cmd, stdin_text, **kwargs):
        captured["cmd"] = cmd
        return _execution(["ok"])

    monkeypatch.setattr("coralph.copilot_cli.execute_streaming_command", _fake)
    prompt = "y" * (POSIX_PROMPT_ARG_LIMIT - 1)

    CopilotCliRunner().run(tmp_path, prompt)

    assert prompt in captured["cmd"]
    assert not (tmp_path / ".coralph").exists()
