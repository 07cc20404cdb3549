# src/llm/base_client.py — v1
"""Abstract generation service interface.

The service is a black box that may throttle, disconnect, refuse on
content grounds or return broken/truncated text; callers must treat every
response as untrusted.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from dreamforge.core.models import GenerationSettings
from dreamforge.llm.models import GenerationResponse


class BaseGenerationClient(ABC):
    """Unified interface for all generation backends."""

    @abstractmethod
    async def generate(
        self,
        payload: dict[str, Any],
        settings: GenerationSettings,
        system: str | None = None,
    ) -> GenerationResponse:
        """Send one structured request and return the raw text."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier (openrouter, google)."""
