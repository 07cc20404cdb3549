# src/llm/classifier.py — v1
"""Map raw failures onto the closed ErrorKind taxonomy.

Signals are matched case-insensitively against the exception text, first
match wins, in this order: quota, connectivity, safety refusal, parse,
validation. Anything unmatched is ``Unknown`` and keeps its original text.
"""

from __future__ import annotations

import json

from dreamforge.core.errors import ForgeError
from dreamforge.core.models import ErrorKind, ErrorRecord

_SIGNALS: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (ErrorKind.QUOTA_EXCEEDED, ("429", "quota", "rate limit", "resource has been exhausted")),
    (
        ErrorKind.CONNECTION_FAILURE,
        (
            "500", "502", "503", "504", "fetch failed", "network",
            "connection", "unavailable", "timed out",
        ),
    ),
    (ErrorKind.CONTENT_FILTERED, ("safety", "blocked", "content filter", "refused")),
    (ErrorKind.PARSING_FAILED, ("json", "syntaxerror", "structure", "valid object", "parse")),
    (ErrorKind.VALIDATION_FAILED, ("missing required fields",)),
]

# (title, message template, suggestion); {context} and {detail} are filled in
_TEMPLATES: dict[ErrorKind, tuple[str, str, str]] = {
    ErrorKind.QUOTA_EXCEEDED: (
        "API Quota Exceeded",
        "The generation service rate limit has been reached.",
        "Please wait a minute before trying again.",
    ),
    ErrorKind.CONNECTION_FAILURE: (
        "Network Error",
        "Unable to connect to the generation service during {context}.",
        "Check your internet connection and API key configuration.",
    ),
    ErrorKind.CONTENT_FILTERED: (
        "Safety Filter Triggered",
        "The response was blocked by the service's safety settings.",
        "Try rephrasing your request to be less sensitive.",
    ),
    ErrorKind.PARSING_FAILED: (
        "Data Corruption",
        "Received invalid data structure during {context}.",
        "This is a random generation glitch. Retrying usually fixes it.",
    ),
    ErrorKind.VALIDATION_FAILED: (
        "Blueprint Incomplete",
        "{detail}",
        "The generator failed to complete the design. Please retry.",
    ),
    ErrorKind.MISSING_INPUT: (
        "Missing Input",
        "{detail}",
        "Provide the missing input and try again.",
    ),
    ErrorKind.UNKNOWN: (
        "System Error",
        "Unexpected error in {context}: {detail}",
        "Check the logs for details.",
    ),
}


def is_retryable(kind: ErrorKind) -> bool:
    """Every kind except ContentFiltered may be retried."""
    return kind is not ErrorKind.CONTENT_FILTERED


def detect_kind(error: BaseException) -> ErrorKind:
    """Return the taxonomy kind for an unclassified exception."""
    if isinstance(error, json.JSONDecodeError):
        return ErrorKind.PARSING_FAILED
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.CONNECTION_FAILURE

    text = f"{type(error).__name__}: {error}".lower()
    for kind, needles in _SIGNALS:
        if any(needle in text for needle in needles):
            return kind
    return ErrorKind.UNKNOWN


def build_record(kind: ErrorKind, context: str, detail: str = "") -> ErrorRecord:
    """Fill the fixed template for ``kind``."""
    title, message, suggestion = _TEMPLATES[kind]
    return ErrorRecord(
        kind=kind,
        title=title,
        message=message.format(context=context, detail=detail),
        suggestion=suggestion,
        retryable=is_retryable(kind),
    )


def classify(error: BaseException, context: str = "generation") -> ErrorRecord:
    """Classify a raw failure.

    Args:
        error: Any exception raised by a stage or the service.
        context: Stage label interpolated into the message.

    Returns:
        The error's existing record if it is a ForgeError, else a new one.
    """
    if isinstance(error, ForgeError):
        return error.record
    return build_record(detect_kind(error), context, detail=str(error) or type(error).__name__)


def to_error(error: BaseException, context: str = "generation") -> ForgeError:
    """Return ``error`` itself if already classified, else a ForgeError for it."""
    if isinstance(error, ForgeError):
        return error
    return ForgeError(classify(error, context))
