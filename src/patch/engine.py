# src/patch/engine.py — v1
"""Apply a refine plan to a text document.

Two strategies, chosen by the service per instruction:

  rewrite  the plan carries a full replacement document
  patch    the plan carries ordered literal search/replace edits

Patch edits run against the document as already modified by the previous
edits; each replaces only the first exact occurrence of its ``search``.
An edit whose ``search`` is missing is skipped and reported. A patch in
which nothing applied is flagged ``no_effect`` so callers can surface it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from dreamforge.core.errors import ValidationFailedError
from dreamforge.core.models import EditOperation
from dreamforge.llm.validator import StructureSpec, decode_variant

logger = logging.getLogger(__name__)

PLAN_CONTEXT = "Refinement Engine"

PLAN_VARIANTS: dict[str, StructureSpec] = {
    "rewrite": StructureSpec(required=("editMode", "fullCode"), optional={"instructions": None}),
    "patch": StructureSpec(required=("editMode", "edits"), optional={"instructions": None}),
}


@dataclass
class PatchPlan:
    """Decoded refine response."""

    mode: Literal["rewrite", "patch"]
    full_document: str = ""
    edits: list[EditOperation] = field(default_factory=list)
    instructions: str | None = None


@dataclass
class SkippedEdit:
    index: int
    search: str
    reason: str


@dataclass
class PatchOutcome:
    """Result of applying a plan."""

    mode: Literal["rewrite", "patch"]
    document: str
    applied: list[int] = field(default_factory=list)
    skipped: list[SkippedEdit] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.applied) + len(self.skipped)

    @property
    def no_effect(self) -> bool:
        """True for a patch in which no edit applied."""
        return self.mode == "patch" and not self.applied

    def summary(self) -> str:
        if self.mode == "rewrite":
            return "rewrite: document replaced"
        return f"patch: {len(self.applied)}/{self.total} edits applied"


def parse_plan(value: Any) -> PatchPlan:
    """Decode a sanitized refine response into a PatchPlan.

    Raises:
        ValidationFailedError: Unknown mode or missing mode-specific fields.
    """
    mode, data = decode_variant(value, "editMode", PLAN_VARIANTS, PLAN_CONTEXT)
    instructions = data.get("instructions")
    if mode == "rewrite":
        full = data["fullCode"]
        if not isinstance(full, str) or not full.strip():
            raise ValidationFailedError(
                PLAN_CONTEXT, ["fullCode"], detail=f"{PLAN_CONTEXT}: fullCode is empty"
            )
        return PatchPlan(mode="rewrite", full_document=full, instructions=instructions)

    raw_edits = data["edits"]
    if not isinstance(raw_edits, list):
        raise ValidationFailedError(
            PLAN_CONTEXT, ["edits"], detail=f"{PLAN_CONTEXT}: edits must be a list"
        )
    edits = [
        EditOperation(search=str(e.get("search") or ""), replace=str(e.get("replace") or ""))
        if isinstance(e, dict)
        else EditOperation(search="", malformed=True)
        for e in raw_edits
    ]
    return PatchPlan(mode="patch", edits=edits, instructions=instructions)


def apply_edits(document: str, edits: list[EditOperation]) -> PatchOutcome:
    """Apply edits in order; every edit ends up in ``applied`` or ``skipped``."""
    outcome = PatchOutcome(mode="patch", document=document)
    current = document
    for index, edit in enumerate(edits):
        if edit.malformed:
            outcome.skipped.append(SkippedEdit(index, "", "malformed edit"))
            logger.warning("Patch edit %d skipped: not an object", index)
            continue
        if not edit.search:
            outcome.skipped.append(SkippedEdit(index, edit.search, "empty search"))
            logger.warning("Patch edit %d skipped: empty search block", index)
            continue
        if edit.search not in current:
            outcome.skipped.append(SkippedEdit(index, edit.search, "search not found"))
            logger.warning(
                "Patch edit %d skipped: exact match failed for %r", index, edit.search[:80]
            )
            continue
        current = current.replace(edit.search, edit.replace, 1)
        outcome.applied.append(index)

    outcome.document = current
    return outcome


def apply_plan(document: str, plan: PatchPlan) -> PatchOutcome:
    """Apply a decoded plan to ``document``."""
    if plan.mode == "rewrite":
        logger.info("Refinement strategy: REWRITE")
        return PatchOutcome(mode="rewrite", document=plan.full_document)

    logger.info("Refinement strategy: PATCH (%d edits)", len(plan.edits))
    outcome = apply_edits(document, plan.edits)
    if outcome.no_effect:
        logger.warning("Patch had no effect: 0/%d edits applied", outcome.total)
    return outcome
