"""Runner for the GitHub Copilot CLI (``copilot``)."""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from contextlib import suppress
from pathlib import Path

from coralph.agent_runner import AgentRunner, register_agent
from coralph.file_io import atomic_write_text
from coralph.runner_common import (
    StreamExecutionResult,
    coerce_int,
    execute_streaming_command,
    execute_with_prompt_transport,
    resolve_binary,
)
from coralph.schemas import RunResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600  # seconds of inactivity

#: Prompts too long for argv are written here, relative to the repo.
PROMPT_FILE_DIR = Path(".coralph") / "prompts"

PROMPT_FILE_POINTER = (
    "Your full instructions for this turn are in @{path}. "
    "Read that file and follow it exactly."
)


class CopilotCliRunner(AgentRunner):
    """Spawn ``copilot -p <prompt>`` and return its plain-text answer.

    The Copilot CLI prints the assistant's transcript to stdout; the whole
    stdout is treated as the turn output so sentinel tokens anywhere in it
    are seen by the loop.

    ``copilot`` only takes the prompt on argv.  A prompt too long for the
    command line is written to a file under ``.coralph/prompts`` and the
    command carries an ``@file`` reference to it instead.
    """

    name = "Copilot CLI"

    def __init__(
        self,
        repo_path: str | Path = ".",
        copilot_binary: str = "copilot",
        timeout: int = DEFAULT_TIMEOUT,
        model: str = "",
        allow_all_tools: bool = True,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.repo_path = repo_path
        self.copilot_binary = copilot_binary
        self.timeout = max(0, coerce_int(timeout))
        self.model = (model or "").strip()
        self.allow_all_tools = allow_all_tools
        self.env_overrides = env_overrides or {}

    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        cancel_event: threading.Event | None = None,
        extra_args: list[str] | None = None,
    ) -> RunResult:
        cwd = Path(repo_path).resolve()
        if not cwd.is_dir():
            return RunResult(errors=[f"repo_path does not exist: {cwd}"])

        logger.info("Running Copilot CLI (cwd=%s, prompt_len=%d)", cwd, len(prompt))
        start = time.monotonic()
        env = {**os.environ, **self.env_overrides}
        prompt_file = PROMPT_FILE_DIR / f"turn-{uuid.uuid4().hex[:12]}.md"

        def _command(prompt_arg: str | None) -> list[str]:
            if prompt_arg is None:
                prompt_arg = PROMPT_FILE_POINTER.format(path=prompt_file.as_posix())
            return self._build_command(prompt_arg, extra_args)

        def _execute(cmd: list[str], file_text: str | None) -> StreamExecutionResult:
            # Text that does not fit on argv is handed over through prompt_file.
            if file_text is not None:
                atomic_write_text(cwd / prompt_file, file_text)
            try:
                return execute_streaming_command(
                    cmd=cmd,
                    cwd=cwd,
                    env=env,
                    timeout_seconds=self.timeout,
                    process_name=self.name,
                    stdin_text=None,
                    cancel_event=cancel_event,
                )
            finally:
                if file_text is not None:
                    with suppress(OSError):
                        (cwd / prompt_file).unlink()

        try:
            execution = execute_with_prompt_transport(
                prompt=prompt,
                process_name=self.name,
                build_command=_command,
                execute=_execute,
            )
        except OSError as exc:
            return RunResult(
                errors=[f"Failed to execute copilot: {exc}"],
                duration_seconds=time.monotonic() - start,
            )

        result = self._to_result(execution)
        result.duration_seconds = time.monotonic() - start
        return result

    def _build_command(self, prompt: str, extra_args: list[str] | None) -> list[str]:
        cmd = [resolve_binary(self.copilot_binary), "-p", prompt]
        if self.allow_all_tools:
            cmd.append("--allow-all-tools")
        if self.model:
            cmd.extend(["--model", self.model])
        if extra_args:
            cmd.extend(extra_args)
        return cmd

    def _to_result(self, execution: StreamExecutionResult) -> RunResult:
        stdout_text = execution.stdout_text
        stderr_text = execution.stderr_text
        if execution.cancelled:
            return RunResult(
                cancelled=True,
                final_message=stdout_text,
                errors=["Execution cancelled by stop request"],
            )
        if execution.timed_out:
            return RunResult(
                final_message=stdout_text,
                errors=[f"Copilot CLI produced no output for {self.timeout}s and was stopped"],
            )
        errors: list[str] = []
        if execution.exit_code != 0:
            errors.append(
                stderr_text
                or f"Copilot CLI exited with status {execution.exit_code} without error output"
            )
        return RunResult(
            success=execution.exit_code == 0,
            exit_code=execution.exit_code,
            final_message=stdout_text,
            errors=errors,
        )


register_agent("copilot", CopilotCliRunner)
