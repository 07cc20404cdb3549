# src/pipeline/events.py — v1
"""Controller events delivered to subscribed listeners.

Event types:
  phase_changed, log_line, error, artifact_ready, token_usage_delta
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PHASE_CHANGED = "phase_changed"
    LOG_LINE = "log_line"
    ERROR = "error"
    ARTIFACT_READY = "artifact_ready"
    TOKEN_USAGE_DELTA = "token_usage_delta"


class PipelineEvent(BaseModel):
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[PipelineEvent], Any]


class EventEmitter:
    """Synchronous fan-out to listeners in subscription order.

    A listener that raises is logged and skipped; the remaining listeners
    still receive the event.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: EventType, **data: Any) -> PipelineEvent:
        event = PipelineEvent(type=event_type, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s event", event_type.value)
        return event

    def __len__(self) -> int:
        return len(self._listeners)
