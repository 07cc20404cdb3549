# tests/conftest.py — v2
"""Shared test fixtures for all unit and integration tests.

Provides a scripted generation client, sample artifacts and settings with
zero backoff. No network access: every service call is scripted.
"""

from __future__ import annotations

import inspect
import json
from typing import Any, Callable

import pytest

from dreamforge.config.settings import Settings
from dreamforge.core.models import GenerationSettings
from dreamforge.llm.base_client import BaseGenerationClient
from dreamforge.llm.models import GenerationResponse


class ScriptedClient(BaseGenerationClient):
    """Generation client that replays a script of responses.

    Each script item is one of:
      - str: returned as the response text
      - GenerationResponse: returned as-is
      - Exception: raised
      - callable(payload) -> any of the above, or an awaitable of it
    """

    def __init__(self, script: list[Any] | None = None, provider: str = "scripted"):
        self.script: list[Any] = list(script or [])
        self.calls: list[dict[str, Any]] = []
        self.systems: list[str | None] = []
        self._provider = provider

    def queue(self, *items: Any) -> None:
        self.script.extend(items)

    async def generate(
        self,
        payload: dict[str, Any],
        settings: GenerationSettings,
        system: str | None = None,
    ) -> GenerationResponse:
        self.calls.append(payload)
        self.systems.append(system)
        if not self.script:
            raise AssertionError(f"Unexpected generation call: {payload.get('task')}")
        item = self.script.pop(0)
        if callable(item) and not isinstance(item, (str, GenerationResponse)):
            item = item(payload)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, GenerationResponse):
            return item
        return GenerationResponse(text=item, provider=self._provider)

    @property
    def provider_name(self) -> str:
        return self._provider


def make_html(body: str = "<canvas id='game'></canvas>", pad: int = 600) -> str:
    """Build document comfortably above the minimum length."""
    filler = "<!-- " + ("x" * pad) + " -->"
    return f"<!DOCTYPE html><html><head><title>Game</title></head><body>{body}{filler}</body></html>"


# === FIXTURES: Sample data ===


@pytest.fixture
def sample_spec() -> dict[str, Any]:
    return {
        "title": "Neon Drift",
        "summary": "A cyberpunk racer where you hack the track.",
        "coreMechanics": ["drift", "hack gates", "boost"],
        "visualRequirements": {"palette": ["#0ff", "#f0f"]},
    }


@pytest.fixture
def sample_audio() -> dict[str, Any]:
    return {
        "description": "Synthwave with glitchy accents",
        "backgroundMusic": {"tempo": 128},
        "soundEffects": [{"name": "boost"}],
    }


@pytest.fixture
def sample_build() -> dict[str, Any]:
    return {"html": make_html(), "instructions": "Arrow keys to steer."}


@pytest.fixture
def spec_json(sample_spec: dict[str, Any]) -> str:
    return json.dumps(sample_spec)


@pytest.fixture
def audio_json(sample_audio: dict[str, Any]) -> str:
    return json.dumps(sample_audio)


@pytest.fixture
def build_json(sample_build: dict[str, Any]) -> str:
    return json.dumps(sample_build)


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with no backoff and short time boxes."""
    return Settings(
        _env_file=None,
        retry_base_delay_s=0.0,
        secondary_timeout_s=0.5,
        build_timeout_s=2.0,
    )


@pytest.fixture
def scripted_client() -> Callable[..., ScriptedClient]:
    def factory(*script: Any, provider: str = "scripted") -> ScriptedClient:
        return ScriptedClient(list(script), provider=provider)

    return factory


@pytest.fixture
def html_factory() -> Callable[..., str]:
    return make_html
