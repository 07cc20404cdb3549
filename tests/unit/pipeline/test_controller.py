# tests/unit/pipeline/test_controller.py — v1
"""Tests for pipeline/controller.py — session state machine."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from dreamforge.config.settings import Settings
from dreamforge.core.errors import InvalidTransitionError, StageInFlightError
from dreamforge.core.models import ErrorKind, Phase, ProjectConfig
from dreamforge.llm.models import GenerationResponse
from dreamforge.manifest.manifest import short_hash
from dreamforge.patch.redaction import BASE64_PLACEHOLDER
from dreamforge.pipeline.controller import PipelineController
from dreamforge.pipeline.events import EventType


# --- Helpers ---

def _controller(client, settings: Settings) -> tuple[PipelineController, list[Any]]:
    controller = PipelineController(client, settings)
    events: list[Any] = []
    controller.subscribe(events.append)
    return controller, events


def _phases(events) -> list[Phase]:
    return [e.data["phase"] for e in events if e.type == EventType.PHASE_CHANGED]


def _gated(gate: asyncio.Event, text: str):
    async def respond(payload):
        await gate.wait()
        return text

    return respond


async def _wait_for_phase(controller: PipelineController, phase: Phase) -> None:
    async def poll():
        while controller.phase != phase:
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout=1.0)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0.01)


@pytest.fixture
def tight_settings() -> Settings:
    return Settings(
        _env_file=None,
        retry_base_delay_s=0.0,
        secondary_timeout_s=0.05,
        build_timeout_s=0.2,
    )


async def _ready(controller: PipelineController, config: ProjectConfig | None = None) -> None:
    result = await controller.start("A cyberpunk racer", config)
    assert result.ok
    controller.freeze()


# --- Tests ---

class TestStart:
    @pytest.mark.asyncio
    async def test_success(self, scripted_client, fast_settings, spec_json, sample_spec):
        c, events = _controller(scripted_client(spec_json), fast_settings)
        result = await c.start("A cyberpunk racer")
        assert result.ok
        assert result.value == sample_spec
        assert c.phase == Phase.SPEC_READY
        assert c.session.spec == sample_spec
        assert _phases(events) == [Phase.DRAFTING, Phase.SPEC_READY]
        kinds = [e.type for e in events]
        assert EventType.ARTIFACT_READY in kinds
        assert EventType.TOKEN_USAGE_DELTA in kinds
        assert c.is_busy is False

    @pytest.mark.asyncio
    async def test_blank_concept(self, scripted_client, fast_settings):
        client = scripted_client()
        c, events = _controller(client, fast_settings)
        result = await c.start("   ")
        assert not result.ok
        assert result.error.kind == ErrorKind.MISSING_INPUT
        assert c.phase == Phase.IDLE
        assert client.calls == []
        errors = [e for e in events if e.type == EventType.ERROR]
        assert errors[0].data["record"].kind == ErrorKind.MISSING_INPUT
        assert _phases(events) == []

    @pytest.mark.asyncio
    async def test_failure_rolls_back_to_idle(self, scripted_client, fast_settings):
        client = scripted_client(RuntimeError("Response blocked by safety filter"))
        c, events = _controller(client, fast_settings)
        result = await c.start("something edgy")
        assert not result.ok
        assert result.error.kind == ErrorKind.CONTENT_FILTERED
        assert c.phase == Phase.IDLE
        assert len(client.calls) == 1
        assert _phases(events) == [Phase.DRAFTING, Phase.IDLE]
        assert c.session.last_error == result.error

    @pytest.mark.asyncio
    async def test_glitch_retried(self, scripted_client, fast_settings, spec_json):
        client = scripted_client("not json at all", '{"title": ', spec_json)
        c, _ = _controller(client, fast_settings)
        result = await c.start("racer")
        assert result.ok
        assert len(client.calls) == 3
        warnings = [e.message for e in c.session.log if e.level == "warning"]
        assert len(warnings) == 2

    @pytest.mark.asyncio
    async def test_redraft_before_freeze(self, scripted_client, fast_settings, spec_json):
        other = json.dumps({"title": "B", "summary": "S", "coreMechanics": []})
        c, _ = _controller(scripted_client(spec_json, other), fast_settings)
        await c.start("first")
        result = await c.start("second")
        assert result.ok
        assert c.session.spec["title"] == "B"
        assert c.session.concept == "second"

    @pytest.mark.asyncio
    async def test_rejected_when_frozen(self, scripted_client, fast_settings, spec_json):
        c, _ = _controller(scripted_client(spec_json), fast_settings)
        await _ready(c)
        with pytest.raises(InvalidTransitionError, match="frozen"):
            await c.start("again")

    @pytest.mark.asyncio
    async def test_overlapping_start_rejected(self, scripted_client, fast_settings, spec_json):
        gate = asyncio.Event()
        client = scripted_client(_gated(gate, spec_json))
        c, _ = _controller(client, fast_settings)
        task = asyncio.create_task(c.start("first"))
        await _wait_for_phase(c, Phase.DRAFTING)
        with pytest.raises(StageInFlightError):
            await c.start("second")
        gate.set()
        result = await task
        assert result.ok
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_reported_usage_reaches_ledger(self, scripted_client, fast_settings, spec_json):
        response = GenerationResponse(text=spec_json, input_tokens=100, output_tokens=20)
        c, events = _controller(scripted_client(response), fast_settings)
        await c.start("racer")
        assert c.session.total_tokens == 120
        delta = next(e for e in events if e.type == EventType.TOKEN_USAGE_DELTA)
        assert delta.data == {"input": 100, "output": 20, "running_total": 120}


class TestFreeze:
    def test_requires_spec(self, scripted_client, fast_settings):
        c, _ = _controller(scripted_client(), fast_settings)
        with pytest.raises(InvalidTransitionError):
            c.freeze()

    @pytest.mark.asyncio
    async def test_freeze(self, scripted_client, fast_settings, spec_json):
        c, _ = _controller(scripted_client(spec_json), fast_settings)
        await c.start("racer")
        c.freeze()
        c.freeze()
        assert c.session.frozen is True
        assert c.phase == Phase.SPEC_READY


class TestBuild:
    @pytest.mark.asyncio
    async def test_requires_freeze(self, scripted_client, fast_settings, spec_json):
        c, _ = _controller(scripted_client(spec_json), fast_settings)
        await c.start("racer")
        with pytest.raises(InvalidTransitionError, match="Freeze"):
            await c.build()

    @pytest.mark.asyncio
    async def test_requires_spec_ready(self, scripted_client, fast_settings):
        c, _ = _controller(scripted_client(), fast_settings)
        with pytest.raises(InvalidTransitionError):
            await c.build()

    @pytest.mark.asyncio
    async def test_success(self, scripted_client, fast_settings, spec_json, audio_json, build_json, sample_spec):
        client = scripted_client(spec_json, audio_json, build_json)
        c, events = _controller(client, fast_settings)
        await _ready(c, ProjectConfig(seed="7", platform="web", quality="hd"))
        result = await c.build()
        assert result.ok
        assert c.phase == Phase.COMPLETE
        assert _phases(events) == [
            Phase.DRAFTING, Phase.SPEC_READY,
            Phase.GENERATING_SECONDARY, Phase.BUILDING, Phase.COMPLETE,
        ]
        manifest = c.session.manifest
        assert manifest.build_hash == short_hash(c.session.document)
        assert manifest.seed == "7"
        assert manifest.quality == "hd"
        assert manifest.parent_hash is None
        assert client.calls[2]["audio"]["description"] == "Synthwave with glitchy accents"
        assert client.calls[2]["specification"] == sample_spec
        assert [r.action for r in c.session.ledger.records] == [
            "Generate Blueprint", "Generate Audio", "Build Prototype",
        ]

    @pytest.mark.asyncio
    async def test_secondary_failure_is_soft(self, scripted_client, fast_settings, spec_json, build_json):
        client = scripted_client(spec_json, RuntimeError("blocked"), build_json)
        c, events = _controller(client, fast_settings)
        await _ready(c)
        result = await c.build()
        assert result.ok
        assert c.phase == Phase.COMPLETE
        assert c.session.secondary is None
        assert client.calls[2]["audio"] is None
        assert not [e for e in events if e.type == EventType.ERROR]
        assert any("Skipping" in e.message for e in c.session.log)

    @pytest.mark.asyncio
    async def test_secondary_timeout_is_soft(self, scripted_client, tight_settings, spec_json, audio_json, build_json):
        gate = asyncio.Event()
        client = scripted_client(spec_json, _gated(gate, audio_json), build_json)
        c, _ = _controller(client, tight_settings)
        await _ready(c)
        result = await c.build()
        assert result.ok
        assert c.session.secondary is None
        assert c.abandoned_tasks == 1

        gate.set()
        await _settle()
        assert c.abandoned_tasks == 0
        assert c.session.secondary is None

    @pytest.mark.asyncio
    async def test_abandoned_secondary_retries_stay_silent(
        self, scripted_client, tight_settings, spec_json, build_json
    ):
        async def slow_outage(payload):
            await asyncio.sleep(0.1)
            return ConnectionError("503 Service Unavailable")

        client = scripted_client(
            spec_json,
            slow_outage,
            build_json,
            ConnectionError("503 Service Unavailable"),
            ConnectionError("503 Service Unavailable"),
        )
        c, events = _controller(client, tight_settings)
        await _ready(c)
        result = await c.build()
        assert result.ok
        assert c.phase == Phase.COMPLETE

        log_size, seen = len(c.session.log), len(events)
        await asyncio.sleep(0.4)
        # every retry of the abandoned stage ran, none of them reported
        assert client.script == []
        assert c.abandoned_tasks == 0
        assert len(c.session.log) == log_size
        assert len(events) == seen
        assert not any("Audio Generator attempt" in e.message for e in c.session.log)

    @pytest.mark.asyncio
    async def test_timeout_message_keeps_fractional_seconds(
        self, scripted_client, tight_settings, spec_json, audio_json, build_json
    ):
        gate = asyncio.Event()
        client = scripted_client(spec_json, _gated(gate, audio_json), build_json)
        c, _ = _controller(client, tight_settings)
        await _ready(c)
        await c.build()
        assert any("timed out after 0.05s" in e.message for e in c.session.log)
        gate.set()
        await _settle()

    @pytest.mark.asyncio
    async def test_build_timeout_is_hard(self, scripted_client, tight_settings, spec_json, audio_json, build_json):
        gate = asyncio.Event()
        client = scripted_client(spec_json, audio_json, _gated(gate, build_json))
        c, events = _controller(client, tight_settings)
        await _ready(c)
        result = await c.build()
        assert not result.ok
        assert result.error.kind == ErrorKind.CONNECTION_FAILURE
        assert "Prototype Builder" in result.error.message
        assert c.phase == Phase.SPEC_READY
        assert c.session.build is None

        seen = len(events)
        gate.set()
        await _settle()
        assert len(events) == seen
        assert c.session.build is None
        assert c.session.manifest is None

    @pytest.mark.asyncio
    async def test_short_document_fails(self, scripted_client, spec_json, audio_json):
        settings = Settings(_env_file=None, retry_max_retries=0, retry_base_delay_s=0.0)
        short = json.dumps({"html": "<p>tiny</p>", "instructions": ""})
        c, _ = _controller(scripted_client(spec_json, audio_json, short), settings)
        await _ready(c)
        result = await c.build()
        assert not result.ok
        assert result.error.kind == ErrorKind.VALIDATION_FAILED
        assert c.phase == Phase.SPEC_READY

    @pytest.mark.asyncio
    async def test_assets_injected(self, scripted_client, fast_settings, spec_json, audio_json, build_json):
        client = scripted_client(spec_json, audio_json, build_json)
        c, _ = _controller(client, fast_settings)
        await _ready(c, ProjectConfig(assets={"hero": "data:image/png;base64,QUJD"}))
        await c.build()
        assert "window.FORGE_ASSETS" in c.session.document
        assert "base64" not in json.dumps(client.calls[2])


class TestCancel:
    def test_noop_when_idle(self, scripted_client, fast_settings):
        c, events = _controller(scripted_client(), fast_settings)
        assert c.cancel() is False
        assert events == []

    @pytest.mark.asyncio
    async def test_cancel_during_drafting(self, scripted_client, fast_settings, spec_json):
        gate = asyncio.Event()
        c, events = _controller(scripted_client(_gated(gate, spec_json)), fast_settings)
        task = asyncio.create_task(c.start("racer"))
        await _wait_for_phase(c, Phase.DRAFTING)
        assert c.cancel() is True
        result = await task
        assert result.cancelled
        assert c.phase == Phase.IDLE

        gate.set()
        await _settle()
        assert c.phase == Phase.IDLE
        assert c.session.spec is None

    @pytest.mark.asyncio
    async def test_cancel_during_build_discards_late_result(
        self, scripted_client, fast_settings, spec_json, audio_json, build_json
    ):
        gate = asyncio.Event()
        client = scripted_client(spec_json, audio_json, _gated(gate, build_json))
        c, events = _controller(client, fast_settings)
        await _ready(c)

        task = asyncio.create_task(c.build())
        await _wait_for_phase(c, Phase.BUILDING)
        assert c.cancel() is True
        assert c.phase == Phase.SPEC_READY
        result = await task
        assert result.cancelled
        assert not result.ok

        seen = len(events)
        tokens = c.session.total_tokens
        gate.set()
        await _settle()
        assert len(events) == seen
        assert c.phase == Phase.SPEC_READY
        assert c.session.build is None
        assert c.session.manifest is None
        assert c.session.total_tokens == tokens
        assert c.abandoned_tasks == 0

    @pytest.mark.asyncio
    async def test_new_stage_after_cancel(self, scripted_client, fast_settings, spec_json, audio_json, build_json):
        gate = asyncio.Event()
        client = scripted_client(spec_json, audio_json, _gated(gate, build_json), audio_json, build_json)
        c, _ = _controller(client, fast_settings)
        await _ready(c)
        task = asyncio.create_task(c.build())
        await _wait_for_phase(c, Phase.BUILDING)
        c.cancel()
        await task

        result = await c.build()
        assert result.ok
        assert c.phase == Phase.COMPLETE
        gate.set()
        await _settle()
        assert c.phase == Phase.COMPLETE


class TestRefine:
    async def _complete(self, client, settings, config=None) -> tuple[PipelineController, list[Any]]:
        c, events = _controller(client, settings)
        await _ready(c, config)
        assert (await c.build()).ok
        return c, events

    @pytest.mark.asyncio
    async def test_requires_complete(self, scripted_client, fast_settings):
        c, _ = _controller(scripted_client(), fast_settings)
        with pytest.raises(InvalidTransitionError):
            await c.refine("make it red")

    @pytest.mark.asyncio
    async def test_patch_success(self, scripted_client, fast_settings, spec_json, audio_json, build_json):
        plan = {
            "editMode": "patch",
            "edits": [{"search": "<canvas id='game'></canvas>", "replace": "<canvas id='game' width='800'></canvas>"}],
            "instructions": "Arrow keys; wider canvas.",
        }
        client = scripted_client(spec_json, audio_json, build_json, json.dumps(plan))
        c, events = await self._complete(client, fast_settings)
        first_hash = c.session.manifest.build_hash
        seen = len(events)

        result = await c.refine("make the canvas wider")
        assert result.ok
        assert result.value.applied == [0]
        assert "width='800'" in c.session.document
        assert c.session.build["instructions"] == "Arrow keys; wider canvas."
        assert c.phase == Phase.COMPLETE
        assert _phases(events[seen:]) == [Phase.BUILDING, Phase.COMPLETE]
        assert c.session.manifest.parent_hash == first_hash
        assert c.session.manifest.build_hash == short_hash(c.session.document)
        assert c.session.change_log[0].instruction == "make the canvas wider"
        assert c.session.change_log[0].applied == 1

    @pytest.mark.asyncio
    async def test_zero_applied_is_reported(self, scripted_client, fast_settings, spec_json, audio_json, build_json):
        plan = {"editMode": "patch", "edits": [{"search": "<svg>", "replace": "<svg class='x'>"}]}
        client = scripted_client(spec_json, audio_json, build_json, json.dumps(plan))
        c, _ = await self._complete(client, fast_settings)
        before = c.session.document

        result = await c.refine("style the svg")
        assert result.ok
        assert result.value.no_effect
        assert c.session.document == before
        assert any("no effect" in e.message and e.level == "warning" for e in c.session.log)
        assert c.session.change_log[0].applied == 0

    @pytest.mark.asyncio
    async def test_rewrite(self, scripted_client, fast_settings, spec_json, audio_json, build_json, html_factory):
        new_doc = html_factory(body="<div id='new'></div>")
        plan = {"editMode": "rewrite", "fullCode": new_doc}
        client = scripted_client(spec_json, audio_json, build_json, json.dumps(plan))
        c, _ = await self._complete(client, fast_settings)
        result = await c.refine("rebuild the layout")
        assert result.ok
        assert c.session.document == new_doc
        assert c.session.build["instructions"] == "Arrow keys to steer."

    @pytest.mark.asyncio
    async def test_failure_keeps_build(self, scripted_client, fast_settings, spec_json, audio_json, build_json):
        client = scripted_client(spec_json, audio_json, build_json, RuntimeError("refused: blocked"))
        c, events = await self._complete(client, fast_settings)
        before = c.session.document
        manifest = c.session.manifest

        result = await c.refine("something")
        assert not result.ok
        assert result.error.kind == ErrorKind.CONTENT_FILTERED
        assert c.phase == Phase.COMPLETE
        assert c.session.document == before
        assert c.session.manifest == manifest
        assert c.session.change_log == []
        assert events[-1].type == EventType.ERROR

    @pytest.mark.asyncio
    async def test_blank_instruction(self, scripted_client, fast_settings, spec_json, audio_json, build_json):
        client = scripted_client(spec_json, audio_json, build_json)
        c, _ = await self._complete(client, fast_settings)
        result = await c.refine("  ")
        assert result.error.kind == ErrorKind.MISSING_INPUT
        assert len(client.calls) == 3

    @pytest.mark.asyncio
    async def test_document_redacted_for_service(self, scripted_client, fast_settings, spec_json, audio_json, build_json):
        plan = {"editMode": "patch", "edits": [{"search": "Game", "replace": "Racer"}]}
        client = scripted_client(spec_json, audio_json, build_json, json.dumps(plan))
        c, _ = await self._complete(
            client, fast_settings, ProjectConfig(assets={"hero": "data:image/png;base64,QUJD"})
        )
        await c.refine("rename")
        sent = client.calls[3]["document"]
        assert BASE64_PLACEHOLDER in sent
        assert "QUJD" not in sent
        assert "data:image/png;base64,QUJD" in c.session.document
        assert "<title>Racer</title>" in c.session.document


class TestSessionControls:
    @pytest.mark.asyncio
    async def test_reset(self, scripted_client, fast_settings, spec_json):
        c, events = _controller(scripted_client(spec_json), fast_settings)
        await _ready(c)
        c.reset()
        assert c.phase == Phase.IDLE
        assert c.session.frozen is False
        assert c.session.total_tokens == 0
        assert _phases(events)[-1] == Phase.IDLE

    @pytest.mark.asyncio
    async def test_reset_rejected_in_flight(self, scripted_client, fast_settings, spec_json):
        gate = asyncio.Event()
        c, _ = _controller(scripted_client(_gated(gate, spec_json)), fast_settings)
        task = asyncio.create_task(c.start("racer"))
        await _wait_for_phase(c, Phase.DRAFTING)
        with pytest.raises(StageInFlightError):
            c.reset()
        gate.set()
        await task

    @pytest.mark.asyncio
    async def test_set_backend(self, scripted_client, fast_settings, spec_json):
        first = scripted_client(provider="first")
        second = scripted_client(spec_json, provider="second")
        c, _ = _controller(first, fast_settings)
        assert c.backend == "first"
        assert c.set_backend(second) == "second"
        assert (await c.start("racer")).ok
        assert first.calls == []
        assert len(second.calls) == 1

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_stage(self, scripted_client, fast_settings, spec_json):
        c, _ = _controller(scripted_client(spec_json), fast_settings)

        def broken(event):
            raise RuntimeError("ui bug")

        c.subscribe(broken)
        assert (await c.start("racer")).ok
