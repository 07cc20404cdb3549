# src/core/errors.py — v1
"""Exception hierarchy.

``ForgeError`` carries a fully classified ``ErrorRecord``; once an error is
classified it is re-raised as-is all the way to the stage boundary.
Caller-misuse errors (overlapping stages, invalid transitions) are plain
exceptions raised synchronously and never reach the classifier.
"""

from __future__ import annotations

from dreamforge.core.models import ErrorKind, ErrorRecord

EXCERPT_LIMIT = 200


class ForgeError(Exception):
    """Failure with a stable classification."""

    def __init__(self, record: ErrorRecord):
        self.record = record
        super().__init__(record.message)

    @property
    def kind(self) -> ErrorKind:
        return self.record.kind

    @property
    def retryable(self) -> bool:
        return self.record.retryable


class ParsingFailedError(ForgeError):
    """Service output could not be repaired into structured data."""

    def __init__(self, context: str, excerpt: str = "", reason: str = ""):
        self.context = context
        self.excerpt = excerpt[:EXCERPT_LIMIT]
        self.reason = reason or "The generated JSON was malformed or truncated."
        super().__init__(
            ErrorRecord(
                kind=ErrorKind.PARSING_FAILED,
                title="Data Corruption",
                message=f"Received invalid data structure during {context}: {self.reason}",
                suggestion="This is a random generation glitch. Retrying usually fixes it.",
                retryable=True,
            )
        )


class NoStructureFoundError(ParsingFailedError):
    """No opening ``{`` or ``[`` anywhere in the service output."""

    def __init__(self, context: str, excerpt: str = ""):
        super().__init__(context, excerpt, reason="No JSON structure found in response.")


class ValidationFailedError(ForgeError):
    """Parsed value is missing required fields."""

    def __init__(self, context: str, missing: list[str], detail: str = ""):
        self.context = context
        self.missing = list(missing)
        message = detail or f"{context}: Missing required fields: {', '.join(self.missing)}"
        super().__init__(
            ErrorRecord(
                kind=ErrorKind.VALIDATION_FAILED,
                title="Blueprint Incomplete",
                message=message,
                suggestion="The generator failed to complete the design. Please retry.",
                retryable=True,
            )
        )


class MissingInputError(ForgeError):
    """Caller input required before anything is sent to the service."""

    def __init__(self, what: str = "concept description"):
        super().__init__(
            ErrorRecord(
                kind=ErrorKind.MISSING_INPUT,
                title="Missing Description",
                message=f"Please provide a {what} before generating.",
                suggestion="Enter a prompt like 'A cyberpunk racing game where you hack the track'.",
                retryable=True,
            )
        )


class StageInFlightError(RuntimeError):
    """A stage is already running on this session."""


class InvalidTransitionError(RuntimeError):
    """Operation not allowed from the current phase."""


class IncompatibleManifestError(ValueError):
    """Manifest schema version is not in the compatibility allow-list."""
