# src/tracking/ledger.py — v1
"""Monotonic token-usage ledger for a session.

The running total only grows; ``reset()`` is reserved for a full session
reset.
"""

from __future__ import annotations

import json
import math
from typing import Any

from dreamforge.tracking.models import TokenUsageRecord

CHARS_PER_TOKEN = 4


def estimate_tokens(value: Any) -> int:
    """Rough token estimate: one token per four characters of text/JSON."""
    if value is None or value == "":
        return 0
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def format_token_count(count: int) -> str:
    """Compact display form: 950, 12.3k, 1.25M."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.2f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}k"
    return str(count)


class TokenLedger:
    """Append-only usage history with a monotonically increasing total."""

    def __init__(self) -> None:
        self._records: list[TokenUsageRecord] = []
        self._total = 0

    @property
    def total(self) -> int:
        return self._total

    @property
    def records(self) -> list[TokenUsageRecord]:
        return list(self._records)

    def add(
        self,
        action: str,
        input_tokens: int,
        output_tokens: int,
        estimated: bool = False,
    ) -> TokenUsageRecord:
        """Record a stage's usage.

        Raises:
            ValueError: If a delta is negative.
        """
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("Token deltas must be non-negative")
        self._total += input_tokens + output_tokens
        record = TokenUsageRecord(
            action=action,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            running_total=self._total,
            estimated=estimated,
        )
        self._records.append(record)
        return record

    def reset(self) -> None:
        self._records.clear()
        self._total = 0
