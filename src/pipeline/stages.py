# src/pipeline/stages.py — v1
"""Generation stages: one service round-trip each, wrapped in retry,
sanitize and validate.

A stage builds a payload, calls the generation client, repairs and parses
the raw text, checks the declared field set and turns the result into an
artifact. Any failure inside an attempt is classified and retried by
``with_retry``; the final failure propagates to the controller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from dreamforge.core.errors import ValidationFailedError
from dreamforge.core.models import GenerationRequest, GenerationSettings, StageKind
from dreamforge.llm.retry import DEFAULT_BASE_DELAY_S, DEFAULT_MAX_RETRIES, with_retry
from dreamforge.llm.sanitizer import sanitize
from dreamforge.llm.validator import StructureSpec
from dreamforge.patch.engine import PatchOutcome, PatchPlan, apply_plan, parse_plan
from dreamforge.patch.redaction import asset_reference, inject_asset_payload, redact_binary_blocks
from dreamforge.tracking.ledger import estimate_tokens

if TYPE_CHECKING:
    from dreamforge.core.errors import ForgeError
    from dreamforge.llm.base_client import BaseGenerationClient

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_s: float = DEFAULT_BASE_DELAY_S


@dataclass
class StageOutput:
    """Artifact of a successful stage plus its usage."""

    stage: StageKind
    artifact: Any
    raw_text: str
    input_tokens: int
    output_tokens: int
    estimated: bool = False


@dataclass
class RefineResult:
    plan: PatchPlan
    outcome: PatchOutcome


class BaseStage(ABC):
    """Standard interface for pipeline stages."""

    kind: StageKind
    context: str
    structure: StructureSpec | None = None

    @abstractmethod
    def build_payload(self, **inputs: Any) -> dict[str, Any]:
        """Structured request body for the service."""

    def decode(self, value: Any) -> Any:
        """Validate the sanitized value against the declared field set."""
        if self.structure is None:
            return value
        return self.structure.validate(value, self.context)

    def finalize(self, data: Any, **inputs: Any) -> Any:
        """Turn validated data into the stage artifact."""
        return data

    @property
    def system_instruction(self) -> str:
        keys = ", ".join(self.structure.required) if self.structure else "the requested fields"
        return f"Respond with a single JSON object containing: {keys}."

    def request(self, settings: GenerationSettings, **inputs: Any) -> GenerationRequest:
        return GenerationRequest(
            stage=self.kind, payload=self.build_payload(**inputs), settings=settings
        )

    async def run(
        self,
        client: BaseGenerationClient,
        settings: GenerationSettings,
        policy: RetryPolicy,
        log: LogFn | None = None,
        **inputs: Any,
    ) -> StageOutput:
        """Execute the stage with retries.

        Raises:
            ForgeError: Classified final failure.
        """
        request = self.request(settings, **inputs)

        async def attempt() -> StageOutput:
            response = await client.generate(
                request.payload, request.settings, system=self.system_instruction
            )
            value = sanitize(response.text, self.context)
            artifact = self.finalize(self.decode(value), **inputs)
            estimated = not (response.input_tokens or response.output_tokens)
            return StageOutput(
                stage=self.kind,
                artifact=artifact,
                raw_text=response.text,
                input_tokens=response.input_tokens or estimate_tokens(request.payload),
                output_tokens=response.output_tokens or estimate_tokens(response.text),
                estimated=estimated,
            )

        def on_retry(attempt_no: int, error: ForgeError) -> None:
            if log is not None:
                reason = str(error).rstrip(".")
                log(f"WARN: {self.context} attempt {attempt_no} failed: {reason}. Retrying...")

        return await with_retry(
            attempt,
            max_retries=policy.max_retries,
            on_retry=on_retry,
            base_delay_s=policy.base_delay_s,
            context=self.context,
        )


class DraftStage(BaseStage):
    """Concept text -> specification."""

    kind = StageKind.DRAFT
    context = "Blueprint Spec"
    structure = StructureSpec(required=("title", "summary", "coreMechanics"))

    def build_payload(self, concept: str = "", preferences: dict[str, Any] | None = None, **_: Any) -> dict[str, Any]:
        return {
            "task": "specification",
            "concept": concept,
            "preferences": preferences or {},
        }


class SecondaryStage(BaseStage):
    """Optional audio companion for the specification."""

    kind = StageKind.SECONDARY
    context = "Audio Generator"
    structure = StructureSpec(
        required=("description", "backgroundMusic", "soundEffects"),
        optional={"description": "Audio description unavailable"},
    )

    def build_payload(self, spec: dict[str, Any] | None = None, **_: Any) -> dict[str, Any]:
        return {"task": "soundscape", "specification": spec or {}}


class BuildStage(BaseStage):
    """Specification (+ optional secondary artifact) -> runnable document."""

    kind = StageKind.BUILD
    context = "Prototype Builder"
    structure = StructureSpec(required=("html", "instructions"))

    def __init__(self, min_chars: int = 500):
        self.min_chars = min_chars

    def build_payload(
        self,
        spec: dict[str, Any] | None = None,
        secondary: dict[str, Any] | None = None,
        assets: dict[str, str] | None = None,
        **_: Any,
    ) -> dict[str, Any]:
        return {
            "task": "build",
            "specification": spec or {},
            "audio": secondary,
            # The service only sees references; data is injected after generation
            "assets": {key: asset_reference(key) for key in sorted(assets or {})},
        }

    def finalize(self, data: dict[str, Any], assets: dict[str, str] | None = None, **_: Any) -> dict[str, Any]:
        html = data.get("html")
        if not isinstance(html, str) or len(html) < self.min_chars:
            raise ValidationFailedError(
                self.context,
                ["html"],
                detail=f"{self.context}: Generated document is suspiciously short or empty.",
            )
        return {**data, "html": inject_asset_payload(html, assets or {})}


class RefineStage(BaseStage):
    """Free-form instruction + current document -> patched document."""

    kind = StageKind.REFINE
    context = "Refinement Engine"

    @property
    def system_instruction(self) -> str:
        return (
            "Respond with a single JSON object. Set editMode to 'patch' with an "
            "'edits' list of {search, replace} for small localized changes, or to "
            "'rewrite' with 'fullCode' for structural changes."
        )

    def build_payload(self, instruction: str = "", document: str = "", **_: Any) -> dict[str, Any]:
        return {
            "task": "refine",
            "instruction": instruction,
            "document": redact_binary_blocks(document),
        }

    def decode(self, value: Any) -> PatchPlan:
        return parse_plan(value)

    def finalize(self, data: PatchPlan, document: str = "", **_: Any) -> RefineResult:
        return RefineResult(plan=data, outcome=apply_plan(document, data))
