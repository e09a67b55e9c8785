"""Sentinel tokens the assistant prints to steer the loop."""

from __future__ import annotations

import re

COMPLETE = "COMPLETE"
"""Assistant believes all work is finished (subject to the backlog check)."""

ALL_TASKS_COMPLETE = "ALL_TASKS_COMPLETE"
"""Assistant marked every generated task done."""

NO_OPEN_ISSUES = "NO_OPEN_ISSUES"
"""Nothing left to work on in the issue source."""

HANG_ON_A_SECOND = "HANG_ON_A_SECOND"
"""Informational: the assistant found a blocker it wants surfaced. Never stops the loop."""

TERMINAL_SIGNALS: tuple[str, ...] = (ALL_TASKS_COMPLETE, NO_OPEN_ISSUES, COMPLETE)
"""Terminal tokens, longest first so ``ALL_TASKS_COMPLETE`` wins over ``COMPLETE``."""

PROMISE_COMPLETE = f"<promise>{COMPLETE}</promise>"

_TOKEN_CHARS = r"A-Za-z0-9_"


def _token_re(token: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?<![{_TOKEN_CHARS}]){re.escape(token)}(?![{_TOKEN_CHARS}])",
        re.IGNORECASE,
    )


_TERMINAL_RES: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (token, _token_re(token)) for token in TERMINAL_SIGNALS
)
_HANG_ON_RE = _token_re(HANG_ON_A_SECOND)


def find_terminal_signal(text: str | None) -> str | None:
    """Return the canonical terminal token found in *text*, or ``None``.

    Matching is case-insensitive on whole tokens: letters, digits and
    underscores may not touch the token on either side, so ``INCOMPLETE``,
    ``COMPLETED`` and ``MAX_ITERATIONS_REACHED`` are ignored while
    ``<promise>complete</promise>`` is recognized.
    """
    if not text:
        return None
    for token, pattern in _TERMINAL_RES:
        if pattern.search(text):
            return token
    return None


def is_terminal_signal(value: str | None) -> bool:
    """Return True when *value* is exactly one of the terminal tokens (any casing)."""
    normalized = (value or "").strip().upper()
    return normalized in TERMINAL_SIGNALS


def contains_hang_on_signal(text: str | None) -> bool:
    if not text:
        return False
    return bool(_HANG_ON_RE.search(text))
