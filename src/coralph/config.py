"""Loop options and their layered loading.

Precedence, lowest first: built-in defaults, the JSON config file
(``coralph.config.json``), ``CORALPH_*`` environment variables (``.env`` is
loaded by the CLI), then explicit overrides from the command line.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from coralph.issues import DEFAULT_ISSUES_FILE
from coralph.task_backlog import DEFAULT_BACKLOG_FILE

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "coralph.config.json"
#: Model used when none is configured.  Agents missing here keep their CLI's own default.
DEFAULT_AGENT_MODELS: dict[str, str] = {
    "copilot": "gpt-5.1-codex",
}
ENV_PREFIX = "CORALPH_"

_CONFIG_SECTION_KEYS = ("LoopOptions", "loopOptions", "loop_options")
_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class ConfigError(ValueError):
    """Raised when configuration cannot be read or fails validation."""


class LoopOptions(BaseModel):
    """Everything one loop run needs to know."""

    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=10, ge=1)
    model: str = ""
    agent: str = "copilot"
    agent_binary: str | None = None
    timeout_seconds: int = Field(default=600, ge=0)
    working_dir: str = "."
    prompt_file: str = "prompt.md"
    progress_file: str = "progress.txt"
    issues_file: str = DEFAULT_ISSUES_FILE
    backlog_file: str = DEFAULT_BACKLOG_FILE
    refresh_issues: bool = False
    repo: str | None = None
    pr_mode: bool = False
    pr_mention: str = "@coralph"
    commit_progress: bool = True
    stream_events: bool = False
    watch_tasks: bool = False

    def resolve(self, name: str) -> Path:
        """Resolve a file option relative to :attr:`working_dir`."""
        path = Path(name).expanduser()
        if path.is_absolute():
            return path
        return Path(self.working_dir).expanduser().resolve() / path

    @property
    def effective_model(self) -> str:
        """The configured model, or the default for :attr:`agent`."""
        return self.model.strip() or DEFAULT_AGENT_MODELS.get(self.agent, "")

    @property
    def prompt_path(self) -> Path:
        return self.resolve(self.prompt_file)

    @property
    def progress_path(self) -> Path:
        return self.resolve(self.progress_file)

    @property
    def issues_path(self) -> Path:
        return self.resolve(self.issues_file)

    @property
    def backlog_path(self) -> Path:
        return self.resolve(self.backlog_file)


def _to_snake(key: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", key).replace("-", "_").lower()


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    for key in _CONFIG_SECTION_KEYS:
        section = data.get(key)
        if isinstance(section, dict):
            data = section
            break
    return {_to_snake(str(key)): value for key, value in data.items()}


def _env_values(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field_name in LoopOptions.model_fields:
        raw = env.get(ENV_PREFIX + field_name.upper())
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()
    return values


def load_options(
    overrides: Mapping[str, Any] | None = None,
    *,
    config_file: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> LoopOptions:
    """Build :class:`LoopOptions` from all configuration layers.

    ``None`` values in *overrides* mean "not given" and do not mask lower
    layers.  An explicitly named *config_file* must exist; the default one is
    optional.
    """
    cli_values = {key: value for key, value in (overrides or {}).items() if value is not None}
    env_values = _env_values(os.environ if env is None else env)

    working_dir = Path(cli_values.get("working_dir") or env_values.get("working_dir") or ".")
    if config_file is not None:
        path = Path(config_file).expanduser()
        if not path.is_absolute():
            path = working_dir / path
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        file_values = _read_config_file(path)
    else:
        path = working_dir / DEFAULT_CONFIG_FILE
        file_values = _read_config_file(path) if path.is_file() else {}
    if file_values:
        logger.debug("Loaded %d option(s) from %s", len(file_values), path)

    merged = {**file_values, **env_values, **cli_values}
    try:
        return LoopOptions.model_validate(merged)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid options: {problems}") from exc
