# src/llm/validator.py — v1
"""Required-field checks for parsed service output.

Each call site declares its own field set with a ``StructureSpec``: which
keys are required and which of those may fall back to a placeholder.
Exemptions are never inferred from the human-readable context label.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from dreamforge.core.errors import ValidationFailedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StructureSpec:
    """Declared field set for one call site.

    Attributes:
        required: Keys that must be present.
        optional: Key -> placeholder used when that key is missing.
    """

    required: tuple[str, ...]
    optional: Mapping[str, Any] = field(default_factory=dict)

    def validate(self, value: Any, context: str) -> dict[str, Any]:
        return validate_structure(value, self.required, context, self.optional)


def validate_structure(
    value: Any,
    required_keys: tuple[str, ...] | list[str],
    context: str,
    optional: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Check that ``value`` is a mapping carrying every required key.

    Args:
        value: Parsed service output.
        required_keys: Keys that must be present.
        context: Stage label for error messages.
        optional: Exempt keys and their placeholders.

    Returns:
        A new dict with placeholders filled in for missing exempt keys.

    Raises:
        ValidationFailedError: Not a mapping, or a non-exempt key is missing.
            The error names every missing key.
    """
    optional = optional or {}

    if not isinstance(value, Mapping):
        raise ValidationFailedError(
            context,
            list(required_keys),
            detail=f"{context}: Response was not a valid object.",
        )

    missing = [key for key in required_keys if key not in value]
    hard_missing = [key for key in missing if key not in optional]
    if hard_missing:
        raise ValidationFailedError(context, missing)

    result = dict(value)
    for key, placeholder in optional.items():
        if key not in result:
            logger.info("%s: optional field '%s' missing, using placeholder", context, key)
            result[key] = placeholder
    return result


def decode_variant(
    value: Any,
    tag: str,
    variants: Mapping[str, StructureSpec],
    context: str,
) -> tuple[str, dict[str, Any]]:
    """Decode a tagged union: read ``tag``, then validate that variant.

    Returns:
        ``(tag_value, validated_dict)``.

    Raises:
        ValidationFailedError: Tag missing, unknown, or the variant's
            required fields are missing.
    """
    envelope = validate_structure(value, (tag,), context)
    tag_value = envelope[tag]
    spec = variants.get(tag_value) if isinstance(tag_value, str) else None
    if spec is None:
        raise ValidationFailedError(
            context,
            [tag],
            detail=(
                f"{context}: Unknown {tag} {tag_value!r}; "
                f"expected one of {', '.join(sorted(variants))}"
            ),
        )
    return tag_value, spec.validate(envelope, context)
