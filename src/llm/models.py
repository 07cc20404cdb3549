# src/llm/models.py — v1
"""Generation service response type."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class GenerationResponse(BaseModel):
    """Normalized response from any generation backend.

    Token counts are 0 when the backend does not report usage; the ledger
    then falls back to a character-based estimate.
    """

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    provider: str = ""
    latency_ms: int = 0
    raw_response: Any = None
