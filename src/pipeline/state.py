# src/pipeline/state.py — v2
"""Mutable session state owned by the pipeline controller.

Holds the phase, the freeze flag, stage artifacts, the session log, the
change log of applied refinements, token accounting and the current
manifest. Only the controller mutates it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from dreamforge.core.models import (
    ChangeLogItem,
    ErrorRecord,
    LogEntry,
    Phase,
    ProjectConfig,
    StageKind,
)
from dreamforge.manifest.manifest import BuildManifest
from dreamforge.tracking.ledger import TokenLedger


class PipelineSession(BaseModel):
    """State accumulating results across the draft, build and refine stages."""

    model_config = {"arbitrary_types_allowed": True}

    # === IDENTITY ===
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # === LIFECYCLE ===
    phase: Phase = Phase.IDLE
    frozen: bool = False

    # === INPUTS ===
    concept: str = ""
    config: ProjectConfig = Field(default_factory=ProjectConfig)

    # === ARTIFACTS (keyed by StageKind value) ===
    artifacts: dict[str, Any] = Field(default_factory=dict)
    manifest: BuildManifest | None = None
    change_log: list[ChangeLogItem] = Field(default_factory=list)

    # === OBSERVABILITY ===
    log: list[LogEntry] = Field(default_factory=list)
    last_error: ErrorRecord | None = None
    ledger: TokenLedger = Field(default_factory=TokenLedger, exclude=True)

    @property
    def spec(self) -> dict[str, Any] | None:
        return self.artifacts.get(StageKind.DRAFT.value)

    @property
    def secondary(self) -> dict[str, Any] | None:
        return self.artifacts.get(StageKind.SECONDARY.value)

    @property
    def build(self) -> dict[str, Any] | None:
        return self.artifacts.get(StageKind.BUILD.value)

    @property
    def document(self) -> str:
        """Current build document, or empty string before the first build."""
        build = self.build
        return build.get("html", "") if build else ""

    @property
    def total_tokens(self) -> int:
        return self.ledger.total

    def append_log(self, message: str, level: str = "info", stage: str | None = None) -> LogEntry:
        entry = LogEntry(level=level, stage=stage, message=message)
        self.log.append(entry)
        return entry

    def record_artifact(self, stage: StageKind, artifact: Any) -> None:
        self.artifacts[stage.value] = artifact

    def clear(self) -> None:
        """Drop all artifacts and history, keeping the session identity."""
        self.phase = Phase.IDLE
        self.frozen = False
        self.concept = ""
        self.config = ProjectConfig()
        self.artifacts.clear()
        self.manifest = None
        self.change_log.clear()
        self.log.clear()
        self.last_error = None
        self.ledger.reset()

    def get_stats(self) -> dict[str, Any]:
        """Summary for CLI output."""
        return {
            "phase": self.phase.value,
            "frozen": self.frozen,
            "artifacts": sorted(self.artifacts),
            "refinements": len(self.change_log),
            "tokens": self.ledger.total,
            "build_hash": self.manifest.build_hash if self.manifest else None,
        }
