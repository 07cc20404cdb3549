# src/logging/context.py — v1
"""Contextual logging support — attach session_id and stage to log records."""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

# Set per session, then per stage while a stage is in flight.
_session_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "session_id", default=None
)
_stage: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "stage", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    session_id: str | None = None
    stage: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(session_id=_session_id.get(), stage=_stage.get())


def set_session_context(session_id: str) -> None:
    """Set session-level context (called once per controller)."""
    _session_id.set(session_id)


def set_stage_context(stage: str | None) -> None:
    """Set stage-level context (called when a stage begins)."""
    _stage.set(stage)


def clear_context() -> None:
    """Reset all context variables."""
    _session_id.set(None)
    _stage.set(None)
