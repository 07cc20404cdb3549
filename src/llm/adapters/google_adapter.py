# src/llm/adapters/google_adapter.py — v2
"""Google Gemini adapter implementing BaseGenerationClient.

Uses the google-generativeai SDK in JSON response mode.
"""

from __future__ import annotations

import json
import time
from typing import Any

from dreamforge.core.models import GenerationSettings
from dreamforge.llm.base_client import BaseGenerationClient
from dreamforge.llm.models import GenerationResponse


class GoogleAdapter(BaseGenerationClient):
    """Google Gemini adapter."""

    def __init__(self, model: str = "gemini-2.5-pro", api_key: str = "", **kwargs: Any):
        self._model = model
        self._api_key = api_key

    async def generate(
        self,
        payload: dict[str, Any],
        settings: GenerationSettings,
        system: str | None = None,
    ) -> GenerationResponse:
        import google.generativeai as genai

        genai.configure(api_key=self._api_key)
        model = genai.GenerativeModel(self._model, system_instruction=system)

        gen_config: dict[str, Any] = {
            "max_output_tokens": settings.max_output_size,
            "temperature": settings.creativity,
            "top_p": settings.nucleus_p,
            "top_k": settings.pool_size,
            "response_mime_type": "application/json",
        }
        contents = [
            {"role": "user", "parts": [{"text": json.dumps(payload, ensure_ascii=False)}]}
        ]

        t0 = time.monotonic()
        resp = await model.generate_content_async(contents, generation_config=gen_config)
        latency = int((time.monotonic() - t0) * 1000)

        # resp.text raises when the candidate was blocked; surface that as a refusal
        feedback = getattr(resp, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise RuntimeError(f"Response blocked by safety filter: {feedback.block_reason}")

        usage = getattr(resp, "usage_metadata", None)
        return GenerationResponse(
            text=resp.text or "",
            input_tokens=getattr(usage, "prompt_token_count", 0) if usage else 0,
            output_tokens=getattr(usage, "candidates_token_count", 0) if usage else 0,
            model=self._model,
            provider="google",
            latency_ms=latency,
            raw_response=resp,
        )

    @property
    def provider_name(self) -> str:
        return "google"
