# src/pipeline/controller.py — v1
"""Pipeline controller: the session state machine.

    idle --start--> drafting --ok--> spec_ready --freeze--> (frozen)
    spec_ready(frozen) --build--> generating_secondary --> building --ok--> complete
    complete --refine--> building --ok--> complete

Failures roll back (drafting -> idle, building -> spec_ready, refine ->
complete) and are surfaced as an ``error`` event carrying an ErrorRecord.
``cancel()`` returns drafting to idle and any later in-flight phase to
spec_ready.

Every stage owns a CancellationToken. Continuations check their own token
before mutating the session or emitting, so a late result from a cancelled
stage changes nothing. Generation tasks that outlive their stage (timeout
or cancel) are abandoned, never cancelled; their outcome is consumed and
dropped when they settle.
Each race hands the work a child token that is cancelled on abandon, so an
abandoned stage that keeps retrying can no longer log to the session.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable

from dreamforge.config.settings import Settings
from dreamforge.core.errors import (
    InvalidTransitionError,
    MissingInputError,
    StageInFlightError,
)
from dreamforge.core.models import (
    ChangeLogItem,
    ErrorRecord,
    GenerationSettings,
    Phase,
    ProjectConfig,
    StageKind,
)
from dreamforge.llm.classifier import classify
from dreamforge.logging.context import get_context, set_session_context, set_stage_context
from dreamforge.manifest.manifest import create_manifest
from dreamforge.pipeline.events import EventEmitter, EventType, Listener
from dreamforge.pipeline.stages import (
    BuildStage,
    DraftStage,
    RefineResult,
    RefineStage,
    RetryPolicy,
    SecondaryStage,
    StageOutput,
)
from dreamforge.pipeline.state import PipelineSession

if TYPE_CHECKING:
    from dreamforge.llm.base_client import BaseGenerationClient

logger = logging.getLogger(__name__)

_ACTIONS = {
    StageKind.DRAFT: "Generate Blueprint",
    StageKind.SECONDARY: "Generate Audio",
    StageKind.BUILD: "Build Prototype",
    StageKind.REFINE: "Refine Code",
}


class StageTimeoutError(TimeoutError):
    """A stage did not settle within its time box."""


class StageCancelledError(Exception):
    """The stage's token was cancelled while awaiting generation."""


class CancellationToken:
    """One-shot cancellation flag for a single stage.

    A child token reads as cancelled once it or its parent is cancelled;
    cancelling the child leaves the parent untouched.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._parent is not None and self._parent.cancelled:
            return True
        return self._event.is_set()

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class OperationResult:
    """Outcome of a controller operation as seen by the caller."""

    ok: bool
    phase: Phase
    value: Any = None
    error: ErrorRecord | None = None
    cancelled: bool = False


class PipelineController:
    """Drive one session through draft, build and refine.

    Args:
        client: Generation backend (strategy, swappable via set_backend).
        settings: Application settings; loaded from .env when omitted.
        session: Existing session to resume; a fresh one otherwise.
    """

    def __init__(
        self,
        client: BaseGenerationClient,
        settings: Settings | None = None,
        session: PipelineSession | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or Settings()
        self.session = session or PipelineSession()
        self.events = EventEmitter()

        self._retry = RetryPolicy(
            max_retries=self._settings.retry_max_retries,
            base_delay_s=self._settings.retry_base_delay_s,
        )
        self._draft = DraftStage()
        self._secondary = SecondaryStage()
        self._build = BuildStage(min_chars=self._settings.min_build_chars)
        self._refine = RefineStage()

        self._token = CancellationToken()
        self._in_flight = False
        self._abandoned: set[asyncio.Task[Any]] = set()

        set_session_context(self.session.session_id)

    # --- Properties ---

    @property
    def phase(self) -> Phase:
        return self.session.phase

    @property
    def is_busy(self) -> bool:
        return self._in_flight

    @property
    def backend(self) -> str:
        return self._client.provider_name

    @property
    def abandoned_tasks(self) -> int:
        """Generation tasks still running after their stage gave up on them."""
        return len(self._abandoned)

    def subscribe(self, listener: Listener):
        """Register an event listener; returns an unsubscribe callable."""
        return self.events.subscribe(listener)

    # --- Operations ---

    def set_backend(self, client: BaseGenerationClient) -> str:
        """Swap the generation backend; returns the new provider name.

        Raises:
            StageInFlightError: A stage is running.
        """
        self._ensure_idle_stage()
        self._client = client
        logger.info("Generation backend switched to %s", client.provider_name)
        self._append_log(f"Backend switched to {client.provider_name}.")
        return client.provider_name

    async def start(self, concept: str, config: ProjectConfig | None = None) -> OperationResult:
        """Draft a specification from ``concept``.

        A blank concept is reported as a MissingInput error without calling
        the service.

        Raises:
            StageInFlightError: A stage is running.
            InvalidTransitionError: The specification is frozen.
        """
        self._ensure_idle_stage()
        if self.session.frozen:
            raise InvalidTransitionError("Specification is frozen; reset the session to draft again")
        if self.phase not in (Phase.IDLE, Phase.SPEC_READY):
            raise InvalidTransitionError(f"Cannot start from phase {self.phase.value}")

        if not concept or not concept.strip():
            record = MissingInputError().record
            self.session.last_error = record
            self._append_log(f"CRITICAL_ERROR: {record.message}", level="error")
            self.events.emit(EventType.ERROR, record=record)
            return OperationResult(ok=False, phase=self.phase, error=record)

        config = config or ProjectConfig(
            platform=self._settings.manifest_platform,
            quality=self._settings.manifest_quality,
        )
        token = self._begin_stage(StageKind.DRAFT)
        try:
            self.session.artifacts.clear()
            self.session.manifest = None
            self.session.change_log.clear()
            self.session.log.clear()
            self.session.last_error = None
            self.session.concept = concept
            self.session.config = config

            self._set_phase(token, Phase.DRAFTING)
            self._log(token, "Starting Blueprint Phase...")
            try:
                guard = token.child()
                output = await self._race(
                    token,
                    self._draft.run(
                        self._client,
                        self._generation_settings(),
                        self._retry,
                        log=self._stage_log(guard),
                        concept=concept,
                        preferences=config.preferences,
                    ),
                    timeout=None,
                    label=self._draft.context,
                    guard=guard,
                )
            except Exception as exc:
                return self._fail(token, exc, self._draft.context, rollback=Phase.IDLE)

            if token.cancelled:
                return self._cancelled()
            self._complete_stage(token, output)
            self._log(token, f"Blueprint ready: {output.artifact.get('title', 'untitled')}")
            self._set_phase(token, Phase.SPEC_READY)
            return OperationResult(ok=True, phase=self.phase, value=output.artifact)
        finally:
            self._end_stage(token)

    def freeze(self) -> None:
        """Lock the specification so it can be built.

        Raises:
            StageInFlightError: A stage is running.
            InvalidTransitionError: No specification yet.
        """
        self._ensure_idle_stage()
        if self.phase not in (Phase.SPEC_READY, Phase.COMPLETE):
            raise InvalidTransitionError(f"Cannot freeze from phase {self.phase.value}")
        if self.session.frozen:
            return
        self.session.frozen = True
        self._append_log("Specification frozen.")

    async def build(self) -> OperationResult:
        """Generate the optional secondary artifact, then the build document.

        Raises:
            StageInFlightError: A stage is running.
            InvalidTransitionError: Not in spec_ready, or spec not frozen.
        """
        self._ensure_idle_stage()
        if self.phase != Phase.SPEC_READY:
            raise InvalidTransitionError(f"Cannot build from phase {self.phase.value}")
        if not self.session.frozen:
            raise InvalidTransitionError("Freeze the specification before building")

        token = self._begin_stage(StageKind.SECONDARY)
        try:
            spec = self.session.spec
            config = self.session.config

            self._set_phase(token, Phase.GENERATING_SECONDARY)
            self._log(token, "Generating audio companion...")
            secondary = await self._run_secondary(token, spec)
            if token.cancelled:
                return self._cancelled()

            set_stage_context(StageKind.BUILD.value)
            self._set_phase(token, Phase.BUILDING)
            self._log(token, "Compiling prototype...")
            try:
                guard = token.child()
                output = await self._race(
                    token,
                    self._build.run(
                        self._client,
                        self._generation_settings(),
                        self._retry,
                        log=self._stage_log(guard),
                        spec=spec,
                        secondary=secondary,
                        assets=config.assets,
                    ),
                    timeout=self._settings.build_timeout_s,
                    label=self._build.context,
                    guard=guard,
                )
            except Exception as exc:
                return self._fail(token, exc, self._build.context, rollback=Phase.SPEC_READY)

            if token.cancelled:
                return self._cancelled()
            manifest = create_manifest(
                spec,
                output.artifact["html"],
                seed=config.seed,
                platform=config.platform,
                quality=config.quality,
            )
            self.session.manifest = manifest
            self._complete_stage(token, output)
            self._log(token, f"Build signed: {manifest.build_hash}")
            self._set_phase(token, Phase.COMPLETE)
            return OperationResult(ok=True, phase=self.phase, value=output.artifact)
        finally:
            self._end_stage(token)

    async def refine(
        self,
        instruction: str,
        settings: GenerationSettings | None = None,
    ) -> OperationResult:
        """Apply a free-form instruction to the current build document.

        Raises:
            StageInFlightError: A stage is running.
            InvalidTransitionError: No completed build.
        """
        self._ensure_idle_stage()
        if self.phase != Phase.COMPLETE:
            raise InvalidTransitionError(f"Cannot refine from phase {self.phase.value}")

        if not instruction or not instruction.strip():
            record = MissingInputError("refinement instruction").record
            self.session.last_error = record
            self._append_log(f"CRITICAL_ERROR: {record.message}", level="error")
            self.events.emit(EventType.ERROR, record=record)
            return OperationResult(ok=False, phase=self.phase, error=record)

        prior_phase = self.phase
        token = self._begin_stage(StageKind.REFINE)
        try:
            previous = self.session.build or {}
            self._set_phase(token, Phase.BUILDING)
            self._log(token, "Applying refinement...")
            try:
                guard = token.child()
                output = await self._race(
                    token,
                    self._refine.run(
                        self._client,
                        settings or self._generation_settings(),
                        self._retry,
                        log=self._stage_log(guard),
                        instruction=instruction,
                        document=self.session.document,
                    ),
                    timeout=self._settings.build_timeout_s,
                    label=self._refine.context,
                    guard=guard,
                )
            except Exception as exc:
                return self._fail(token, exc, self._refine.context, rollback=prior_phase)

            if token.cancelled:
                return self._cancelled()

            result: RefineResult = output.artifact
            outcome = result.outcome
            if outcome.no_effect:
                self._log(
                    token,
                    f"WARN: Patch had no effect ({outcome.summary()}). Document unchanged.",
                    level="warning",
                )
            else:
                self._log(token, f"Refinement applied ({outcome.summary()}).")

            refined = {
                **previous,
                "html": outcome.document,
                "instructions": result.plan.instructions or previous.get("instructions", ""),
            }
            config = self.session.config
            parent_hash = self.session.manifest.build_hash if self.session.manifest else None
            self.session.manifest = create_manifest(
                self.session.spec,
                outcome.document,
                seed=config.seed,
                platform=config.platform,
                quality=config.quality,
                parent_hash=parent_hash,
            )
            self.session.change_log.append(
                ChangeLogItem(
                    instruction=instruction,
                    mode=outcome.mode,
                    applied=len(outcome.applied),
                    skipped=len(outcome.skipped),
                )
            )
            self._complete_stage(token, output, artifact=refined, stage=StageKind.BUILD)
            self._set_phase(token, Phase.COMPLETE)
            return OperationResult(ok=True, phase=self.phase, value=outcome)
        finally:
            self._end_stage(token)

    def cancel(self) -> bool:
        """Abort the in-flight stage; returns False when nothing is running."""
        if not self._in_flight:
            return False
        self._token.cancel()
        self._in_flight = False
        target = Phase.IDLE if self.phase == Phase.DRAFTING else Phase.SPEC_READY
        logger.warning("Stage cancelled by user in phase %s", self.phase.value)
        self._append_log("USER ABORT TRIGGERED.", level="warning")
        self.session.phase = target
        self.events.emit(EventType.PHASE_CHANGED, phase=target)
        set_stage_context(None)
        return True

    def reset(self) -> None:
        """Start over: clear artifacts, history and the token ledger.

        Raises:
            StageInFlightError: A stage is running.
        """
        self._ensure_idle_stage()
        self.session.clear()
        logger.info("Session %s reset", self.session.session_id)
        self.events.emit(EventType.PHASE_CHANGED, phase=Phase.IDLE)

    # --- Stage plumbing ---

    def _ensure_idle_stage(self) -> None:
        if self._in_flight:
            raise StageInFlightError(f"A stage is already in flight (phase {self.phase.value})")

    def _begin_stage(self, kind: StageKind) -> CancellationToken:
        token = CancellationToken()
        self._token = token
        self._in_flight = True
        set_stage_context(kind.value)
        return token

    def _end_stage(self, token: CancellationToken) -> None:
        if token is self._token and not token.cancelled:
            self._in_flight = False
            set_stage_context(None)

    def _generation_settings(self) -> GenerationSettings:
        return self._settings.generation_defaults

    async def _race(
        self,
        token: CancellationToken,
        work: Awaitable[StageOutput],
        timeout: float | None,
        label: str,
        guard: CancellationToken | None = None,
    ) -> StageOutput:
        """Await ``work`` until it settles, the token is cancelled or time runs out.

        ``guard`` is the token the work itself reports through; it is
        cancelled when the work is abandoned so later retries stay silent.

        Raises:
            StageCancelledError: Token cancelled first.
            StageTimeoutError: Time box expired first.
        """
        task = asyncio.ensure_future(work)
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not waiter.done():
                waiter.cancel()

        if task in done:
            return task.result()

        if guard is not None:
            guard.cancel()
        self._abandon(task, label)
        if token.cancelled:
            raise StageCancelledError(f"{label} cancelled")
        raise StageTimeoutError(f"{label} timed out after {timeout:g}s")

    def _abandon(self, task: asyncio.Task[Any], label: str) -> None:
        self._abandoned.add(task)

        def settle(finished: asyncio.Task[Any]) -> None:
            self._abandoned.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.debug("Abandoned %s settled with %s; discarded", label, type(exc).__name__)
            else:
                logger.debug("Abandoned %s settled; result discarded", label)

        task.add_done_callback(settle)

    async def _run_secondary(self, token: CancellationToken, spec: Any) -> dict[str, Any] | None:
        """Soft time-boxed stage: any failure degrades to no artifact."""
        try:
            guard = token.child()
            output = await self._race(
                token,
                self._secondary.run(
                    self._client,
                    self._generation_settings(),
                    self._retry,
                    log=self._stage_log(guard),
                    spec=spec,
                ),
                timeout=self._settings.secondary_timeout_s,
                label=self._secondary.context,
                guard=guard,
            )
        except Exception as exc:
            if not token.cancelled:
                logger.warning("Secondary stage skipped: %s", exc)
                self._log(token, f"WARN: Audio generation failed or timed out: {exc}. Skipping.", level="warning")
            return None
        if token.cancelled:
            return None
        self._complete_stage(token, output)
        return output.artifact

    def _complete_stage(
        self,
        token: CancellationToken,
        output: StageOutput,
        artifact: Any = None,
        stage: StageKind | None = None,
    ) -> None:
        if token.cancelled:
            return
        stage = stage or output.stage
        artifact = output.artifact if artifact is None else artifact
        self.session.record_artifact(stage, artifact)

        record = self.session.ledger.add(
            _ACTIONS[output.stage],
            output.input_tokens,
            output.output_tokens,
            estimated=output.estimated,
        )
        self._log(
            token,
            f"{record.action}: +{record.input_tokens} in / +{record.output_tokens} out"
            f"{' (estimated)' if record.estimated else ''}",
        )
        self.events.emit(
            EventType.TOKEN_USAGE_DELTA,
            input=record.input_tokens,
            output=record.output_tokens,
            running_total=record.running_total,
        )
        self.events.emit(EventType.ARTIFACT_READY, stage=output.stage, artifact=artifact)

    def _fail(
        self,
        token: CancellationToken,
        exc: Exception,
        context: str,
        rollback: Phase,
    ) -> OperationResult:
        if token.cancelled:
            return self._cancelled()
        record = classify(exc, context)
        logger.error("%s failed: %s (%s)", context, record.message, record.kind.value)
        self.session.last_error = record
        self._log(token, f"CRITICAL_ERROR: {record.message}", level="error")
        self._set_phase(token, rollback)
        self.events.emit(EventType.ERROR, record=record)
        return OperationResult(ok=False, phase=self.phase, error=record)

    def _cancelled(self) -> OperationResult:
        return OperationResult(ok=False, phase=self.phase, cancelled=True)

    def _set_phase(self, token: CancellationToken, phase: Phase) -> None:
        if token.cancelled:
            return
        self.session.phase = phase
        logger.debug("Phase -> %s", phase.value)
        self.events.emit(EventType.PHASE_CHANGED, phase=phase)

    def _log(self, token: CancellationToken, message: str, level: str = "info") -> None:
        if token.cancelled:
            return
        self._append_log(message, level=level)

    def _append_log(self, message: str, level: str = "info") -> None:
        entry = self.session.append_log(message, level=level, stage=self._current_stage())
        self.events.emit(EventType.LOG_LINE, text=entry.message, level=entry.level)

    def _current_stage(self) -> str | None:
        return get_context().stage

    def _stage_log(self, token: CancellationToken):
        def log(message: str) -> None:
            self._log(token, message, level="warning")

        return log
