# src/tracking/models.py — v2
"""Token usage models: one record per successful stage."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class TokenUsageRecord(BaseModel):
    """Usage delta of one successful stage, with the running total after it."""

    action: str
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    running_total: int = Field(ge=0)
    estimated: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
