"""Abstract base class and registry for assistant runners.

The loop only needs :meth:`AgentRunner.run_turn`: send one prompt, get the
assistant's final text back.  Subprocess-backed runners implement
:meth:`AgentRunner.run`, which returns a structured :class:`RunResult`, and
inherit ``run_turn`` which turns failures into exceptions.
"""

from __future__ import annotations

import abc
import threading
from pathlib import Path
from typing import Any

from coralph.schemas import RunResult


class AgentRunError(RuntimeError):
    """Raised by :meth:`AgentRunner.run_turn` when the assistant run failed."""


class TurnCancelled(RuntimeError):
    """Raised when a turn was interrupted by the loop's cancellation event."""


class AgentRunner(abc.ABC):
    """Common interface for assistant CLI wrappers."""

    #: Human-readable name used in logs (e.g. "Copilot CLI", "Claude Code").
    name: str = "base"

    #: Working directory the assistant runs in.
    repo_path: str | Path = "."

    @abc.abstractmethod
    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        cancel_event: threading.Event | None = None,
        extra_args: list[str] | None = None,
    ) -> RunResult:
        """Execute a single assistant invocation and return structured results.

        Parameters
        ----------
        repo_path:
            Working directory (the target git repository).
        prompt:
            The combined prompt for this iteration.
        cancel_event:
            When set, the running process is terminated and the result is
            marked ``cancelled``.
        extra_args:
            Additional CLI flags forwarded verbatim.
        """

    def run_turn(self, prompt: str, *, cancel_event: threading.Event | None = None) -> str:
        """Run one turn in :attr:`repo_path` and return the assistant's final text."""
        result = self.run(self.repo_path, prompt, cancel_event=cancel_event)
        if result.cancelled or (cancel_event is not None and cancel_event.is_set()):
            raise TurnCancelled(f"{self.name} turn cancelled")
        if not result.success:
            detail = "; ".join(e.strip() for e in result.errors if e.strip())
            raise AgentRunError(detail or f"{self.name} exited with status {result.exit_code}")
        return result.final_message


# -- Registry -------------------------------------------------------------

_REGISTRY: dict[str, type[AgentRunner]] = {}


def register_agent(key: str, cls: type[AgentRunner]) -> None:
    """Register an agent runner class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Agent key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentRunner):
        raise TypeError("Registered agent must be an AgentRunner subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Agent '{normalized_key}' is already registered with {existing.__name__}"
        )
    _REGISTRY[normalized_key] = cls


def get_agent_class(key: str) -> type[AgentRunner]:
    """Look up a registered agent runner class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown agent '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def create_agent(key: str, **kwargs: Any) -> AgentRunner:
    """Instantiate the runner registered under *key*."""
    return get_agent_class(key)(**kwargs)


def list_agents() -> list[str]:
    """Return all registered agent keys."""
    return sorted(_REGISTRY)
