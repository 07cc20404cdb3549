# src/core/models.py — v1
"""Shared domain models: phases, generation settings, error records,
edit operations and stage results.

Every model that crosses a module boundary lives here so that the
sanitizer, classifier, patch engine and controller agree on one shape.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Phase(str, Enum):
    """Pipeline phase. ``frozen`` is tracked separately on the session."""

    IDLE = "idle"
    DRAFTING = "drafting"
    SPEC_READY = "spec_ready"
    GENERATING_SECONDARY = "generating_secondary"
    BUILDING = "building"
    COMPLETE = "complete"


IN_FLIGHT_PHASES = frozenset(
    {Phase.DRAFTING, Phase.GENERATING_SECONDARY, Phase.BUILDING}
)


class StageKind(str, Enum):
    """Kind of generation request sent to the service."""

    DRAFT = "draft"
    SECONDARY = "secondary"
    BUILD = "build"
    REFINE = "refine"


class ErrorKind(str, Enum):
    """Closed failure taxonomy."""

    QUOTA_EXCEEDED = "QuotaExceeded"
    CONNECTION_FAILURE = "ConnectionFailure"
    CONTENT_FILTERED = "ContentFiltered"
    PARSING_FAILED = "ParsingFailed"
    VALIDATION_FAILED = "ValidationFailed"
    MISSING_INPUT = "MissingInput"
    UNKNOWN = "Unknown"


class ErrorRecord(BaseModel):
    """Classified failure as surfaced to callers."""

    model_config = {"frozen": True}

    kind: ErrorKind
    title: str
    message: str
    suggestion: str = ""
    retryable: bool = True

    def as_caller_dict(self) -> dict[str, str]:
        """Caller-facing ``{title, message, code, suggestion}`` shape."""
        return {
            "title": self.title,
            "message": self.message,
            "code": self.kind.value,
            "suggestion": self.suggestion,
        }


class GenerationSettings(BaseModel):
    """Sampling knobs forwarded to the generation service."""

    creativity: float = Field(default=0.7, ge=0.0, le=2.0)
    max_output_size: int = Field(default=65536, gt=0)
    nucleus_p: float = Field(default=0.95, ge=0.0, le=1.0)
    pool_size: int = Field(default=40, ge=1)


class GenerationRequest(BaseModel):
    """One call to the generation service."""

    stage: StageKind
    payload: dict[str, Any]
    settings: GenerationSettings = Field(default_factory=GenerationSettings)


class EditOperation(BaseModel):
    """Literal search-and-replace step of a patch plan."""

    search: str
    replace: str = ""
    # entry was not an object; kept so indices match the service list
    malformed: bool = False


class ProjectConfig(BaseModel):
    """Caller options passed to ``start()``.

    ``preferences`` is forwarded verbatim to the draft stage payload.
    """

    seed: str = Field(default_factory=lambda: datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"))
    platform: str = "web"
    quality: str = "prototype"
    preferences: dict[str, Any] = Field(default_factory=dict)
    assets: dict[str, str] = Field(default_factory=dict)


class LogEntry(BaseModel):
    """Append-only session log line."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: str = "info"
    stage: str | None = None
    message: str


class ChangeLogItem(BaseModel):
    """A refine instruction that was successfully applied."""

    instruction: str
    mode: str
    applied: int = 0
    skipped: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
