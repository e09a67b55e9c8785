"""Runner for the Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

from coralph.agent_runner import AgentRunner, register_agent
from coralph.runner_common import (
    StreamExecutionResult,
    coerce_int,
    execute_streaming_command,
    execute_with_prompt_transport,
    resolve_binary,
)
from coralph.schemas import AgentEvent, EventKind, RunResult, UsageInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600  # seconds of inactivity


class ClaudeCodeRunner(AgentRunner):
    """Spawn ``claude -p`` and parse its stream-json output.

    Claude Code's non-interactive mode emits one JSON object per line::

        {"type": "system", ...}
        {"type": "assistant", "message": {"content": [...]}, ...}
        {"type": "result", "result": "...", "usage": {...}}

    Parameters
    ----------
    repo_path:
        Working directory used by :meth:`run_turn`.
    claude_binary:
        Path or name of the Claude Code CLI binary.
    timeout:
        Seconds without output before the child is killed. ``0`` disables it.
    model:
        ``--model`` override; blank keeps the CLI default.
    max_turns:
        ``--max-turns`` limit; ``0`` means unlimited.
    skip_permissions:
        Pass ``--dangerously-skip-permissions`` so the loop never blocks on
        an interactive approval prompt.
    """

    name = "Claude Code"

    def __init__(
        self,
        repo_path: str | Path = ".",
        claude_binary: str = "claude",
        timeout: int = DEFAULT_TIMEOUT,
        model: str = "",
        max_turns: int = 0,
        skip_permissions: bool = True,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.repo_path = repo_path
        self.claude_binary = claude_binary
        self.timeout = max(0, coerce_int(timeout))
        self.model = (model or "").strip()
        self.max_turns = max(0, coerce_int(max_turns))
        self.skip_permissions = skip_permissions
        self.env_overrides = env_overrides or {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        cancel_event: threading.Event | None = None,
        extra_args: list[str] | None = None,
    ) -> RunResult:
        """Execute a single Claude Code invocation and return results."""
        cwd = Path(repo_path).resolve()
        if not cwd.is_dir():
            return RunResult(errors=[f"repo_path does not exist: {cwd}"])

        logger.info("Running Claude Code CLI (cwd=%s, prompt_len=%d)", cwd, len(prompt))
        start = time.monotonic()
        env = {**os.environ, **self.env_overrides}

        def _execute(cmd: list[str], stdin_text: str | None) -> StreamExecutionResult:
            return execute_streaming_command(
                cmd=cmd,
                cwd=cwd,
                env=env,
                timeout_seconds=self.timeout,
                process_name=self.name,
                parse_stdout_line=self._parse_line,
                stdin_text=stdin_text,
                cancel_event=cancel_event,
            )

        try:
            execution = execute_with_prompt_transport(
                prompt=prompt,
                process_name=self.name,
                build_command=lambda prompt_arg: self._build_command(prompt_arg, extra_args),
                execute=_execute,
            )
        except OSError as exc:
            return RunResult(
                errors=[f"Failed to execute claude: {exc}"],
                duration_seconds=time.monotonic() - start,
            )

        result = self._to_result(execution)
        result.duration_seconds = time.monotonic() - start
        return result

    # ------------------------------------------------------------------
    # Command building
    # ------------------------------------------------------------------

    def _build_command(self, prompt: str | None, extra_args: list[str] | None) -> list[str]:
        cmd = [resolve_binary(self.claude_binary), "-p"]
        if prompt is not None:
            cmd.append(prompt)
        # stream-json requires --verbose in print mode.
        cmd.extend(["--output-format", "stream-json", "--verbose"])
        if self.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if self.max_turns > 0:
            cmd.extend(["--max-turns", str(self.max_turns)])
        if self.model:
            cmd.extend(["--model", self.model])
        if extra_args:
            cmd.extend(extra_args)
        return cmd

    # ------------------------------------------------------------------
    # Output parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_line(line: str) -> AgentEvent | None:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from claude: %s", line[:200])
            return None
        if not isinstance(data, dict):
            return None
        kind = _classify_event(data)
        return AgentEvent(kind=kind, raw=data, text=_extract_text(data, kind))

    def _to_result(self, execution: StreamExecutionResult) -> RunResult:
        stderr_text = execution.stderr_text
        extra = [stderr_text] if stderr_text else []
        if execution.cancelled:
            return RunResult(
                cancelled=True,
                events=execution.events,
                errors=["Execution cancelled by stop request", *extra],
            )
        if execution.timed_out:
            return RunResult(
                events=execution.events,
                errors=[
                    f"Claude Code produced no output for {self.timeout}s and was stopped",
                    *extra,
                ],
            )
        return _aggregate(
            execution.events, execution.exit_code, stderr_text, execution.stdout_lines
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

def _aggregate(
    events: list[AgentEvent],
    exit_code: int,
    stderr: str,
    stdout_lines: list[str],
) -> RunResult:
    """Fold parsed events into a :class:`RunResult`.

    The final message is the ``result`` event text when present, else the
    last assistant text, else the last non-JSON stdout line.
    """
    errors: list[str] = [stderr] if stderr else []
    usage = UsageInfo()
    final_message = ""
    last_assistant_text = ""

    for ev in events:
        if ev.kind == EventKind.ERROR:
            errors.append(ev.text or json.dumps(ev.raw))
        elif ev.kind == EventKind.TURN_COMPLETED:
            usage = _extract_usage(ev.raw)
            if ev.text:
                final_message = ev.text
        elif ev.kind == EventKind.AGENT_MESSAGE and ev.text:
            last_assistant_text = ev.text

    if not final_message:
        final_message = last_assistant_text
    if not final_message:
        for line in reversed(stdout_lines):
            try:
                json.loads(line)
            except json.JSONDecodeError:
                final_message = line
                break

    if exit_code != 0 and not errors:
        errors.append(
            final_message[:500]
            or f"Claude Code exited with status {exit_code} but produced no error output"
        )

    return RunResult(
        success=exit_code == 0,
        exit_code=exit_code,
        final_message=final_message,
        events=events,
        usage=usage,
        errors=errors,
    )


def _classify_event(data: dict[str, Any]) -> EventKind:
    etype = str(data.get("type") or "").strip().lower()
    if etype == "result":
        if data.get("is_error") or str(data.get("subtype") or "").startswith("error"):
            return EventKind.ERROR
        return EventKind.TURN_COMPLETED
    if etype == "assistant":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict) or block.get("type") != "tool_use":
                    continue
                tool_name = str(block.get("name") or "").lower()
                if any(k in tool_name for k in ("write", "edit")):
                    return EventKind.FILE_CHANGE
                if "bash" in tool_name:
                    return EventKind.COMMAND_EXEC
        return EventKind.AGENT_MESSAGE
    if etype == "error" or "error" in data:
        return EventKind.ERROR
    return EventKind.UNKNOWN


def _extract_text(data: dict[str, Any], kind: EventKind) -> str | None:
    result = data.get("result")
    if isinstance(result, str) and result.strip():
        return result

    if data.get("type") == "assistant":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            texts = [
                str(block.get("text") or "")
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            ]
            return "\n".join(texts).strip() or None

    if kind == EventKind.ERROR:
        for key in ("error", "message"):
            val = data.get(key)
            if isinstance(val, str):
                return val
            if isinstance(val, dict):
                return str(val.get("message") or "") or None
    return None


def _extract_usage(data: dict[str, Any]) -> UsageInfo:
    usage_raw = data.get("usage")
    if not isinstance(usage_raw, dict):
        usage_raw = {}
    input_tokens = max(0, coerce_int(usage_raw.get("input_tokens")))
    output_tokens = max(0, coerce_int(usage_raw.get("output_tokens")))
    cache_tokens = max(0, coerce_int(usage_raw.get("cache_read_input_tokens"))) + max(
        0, coerce_int(usage_raw.get("cache_creation_input_tokens"))
    )
    return UsageInfo(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens + cache_tokens,
        model=data.get("model"),
    )


register_agent("claude_code", ClaudeCodeRunner)
