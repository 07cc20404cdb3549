# src/llm/adapters/openrouter_adapter.py — v1
"""OpenRouter adapter implementing BaseGenerationClient.

OpenRouter speaks the OpenAI chat-completions protocol, so this uses the
official openai SDK pointed at the OpenRouter base URL.
"""

from __future__ import annotations

import json
import time
from typing import Any

from dreamforge.core.models import GenerationSettings
from dreamforge.llm.base_client import BaseGenerationClient
from dreamforge.llm.models import GenerationResponse

_DEFAULT_SYSTEM = (
    "You are an expert game developer and software architect. "
    "Output strict valid JSON only, without markdown code blocks."
)


class OpenRouterAdapter(BaseGenerationClient):
    """OpenRouter (OpenAI-compatible) adapter."""

    def __init__(
        self,
        model: str = "google/gemini-3-pro-preview",
        api_key: str = "",
        base_url: str = "https://openrouter.ai/api/v1",
        **kwargs: Any,
    ):
        self._model = model
        self._api_key = api_key
        self._base_url = base_url

    async def generate(
        self,
        payload: dict[str, Any],
        settings: GenerationSettings,
        system: str | None = None,
    ) -> GenerationResponse:
        import openai

        client = openai.AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        messages = [
            {"role": "system", "content": system or _DEFAULT_SYSTEM},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]

        t0 = time.monotonic()
        resp = await client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=settings.creativity,
            max_tokens=settings.max_output_size,
            top_p=settings.nucleus_p,
            # top_k is not part of the OpenAI schema; OpenRouter accepts it as an extra
            extra_body={"top_k": settings.pool_size},
            response_format={"type": "json_object"},
        )
        latency = int((time.monotonic() - t0) * 1000)

        if not resp.choices:
            raise ConnectionError("OpenRouter returned no choices (service unavailable)")
        choice = resp.choices[0]
        usage = resp.usage
        return GenerationResponse(
            text=choice.message.content or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            model=self._model,
            provider="openrouter",
            latency_ms=latency,
            raw_response=resp,
        )

    @property
    def provider_name(self) -> str:
        return "openrouter"
