# src/llm/sanitizer.py — v1
"""Repair-and-parse layer for structured text returned by the generation service.

The service output may be wrapped in code fences, surrounded by commentary,
sprinkled with JS-style comments or cut off mid-structure by the output
limit. ``sanitize`` tries, in order:

  1. direct parse after fence and comment stripping
  2. balance repair from the first ``{`` / ``[`` (close string, drop
     dangling tail, close open containers in reverse order)
  3. the repaired text with separators before closers removed

A document that is already valid JSON is returned unchanged by step 1.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from dreamforge.core.errors import NoStructureFoundError, ParsingFailedError

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"```[a-zA-Z]*[ \t]*\r?\n?")
_CLOSERS = {"{": "}", "[": "]"}
_OPENERS = {"}": "{", "]": "["}

# Dangling tails left behind by truncation
_PARTIAL_LITERAL = re.compile(r"([\[{,:]\s*)(?:t|tr|tru|f|fa|fal|fals|n|nu|nul|-)$")
_PARTIAL_NUMBER = re.compile(r"(\d)(?:\.|[eE][+-]?)$")
_PARTIAL_UNICODE_ESCAPE = re.compile(r"(?<!\\)\\u[0-9a-fA-F]{0,3}$")


def sanitize(text: str | None, context: str = "response") -> Any:
    """Parse possibly malformed structured text.

    Args:
        text: Raw service output.
        context: Human-readable stage label used in error messages.

    Returns:
        The parsed JSON value.

    Raises:
        NoStructureFoundError: No opening brace/bracket in the output.
        ParsingFailedError: Every repair attempt failed.
    """
    if text is None or not text.strip():
        raise ParsingFailedError(context, "", reason="Received empty response.")

    clean = strip_comments(strip_fences(text)).strip()

    try:
        return json.loads(clean)
    except json.JSONDecodeError:
        pass

    start = _first_structure_index(clean)
    if start == -1:
        raise NoStructureFoundError(context, text)

    repaired = repair_truncated(clean[start:])
    try:
        value = json.loads(repaired)
        logger.debug("Repaired truncated structure for %s", context)
        return value
    except json.JSONDecodeError:
        pass

    relaxed = strip_trailing_separators(repaired)
    try:
        value = json.loads(relaxed)
        logger.debug("Removed trailing separators for %s", context)
        return value
    except json.JSONDecodeError as exc:
        logger.warning("Parse failed for %s: %s", context, text[:200])
        raise ParsingFailedError(context, text) from exc


def strip_fences(text: str) -> str:
    """Remove markdown code-fence markers, keeping their content."""
    return _FENCE_OPEN.sub("", text).replace("```", "")


def strip_comments(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments that sit outside string literals.

    Single pass; look-alikes inside strings (``"http://..."``) are kept.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    in_string = False
    escape = False

    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            out.append(ch)
            i += 1

    return "".join(out)


def repair_truncated(snippet: str) -> str:
    """Close whatever the truncation left open.

    The scan stops at the end of the first complete top-level value, so
    trailing commentary is dropped as well.
    """
    stack: list[str] = []
    in_string = False
    escape = False
    string_start = -1
    end = len(snippet)

    for i, ch in enumerate(snippet):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
            string_start = i
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in _OPENERS:
            if stack and stack[-1] == _OPENERS[ch]:
                stack.pop()
            if not stack:
                end = i + 1
                break

    balanced = snippet[:end]
    if not stack:
        return balanced

    if in_string:
        if escape:
            balanced = balanced[:-1]
        balanced = _PARTIAL_UNICODE_ESCAPE.sub("", balanced) + '"'

    balanced = _drop_dangling_tail(balanced, stack[-1], string_start)

    for opener in reversed(stack):
        balanced += _CLOSERS[opener]
    return balanced


def strip_trailing_separators(text: str) -> str:
    """Remove commas that directly precede ``}`` or ``]`` outside strings."""
    out: list[str] = []
    pending: list[str] = []
    in_string = False
    escape = False

    for ch in text:
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if pending:
            if ch.isspace():
                pending.append(ch)
                continue
            if ch in _OPENERS:
                pending = pending[1:]  # drop the comma, keep whitespace
            out.extend(pending)
            pending = []

        if ch == ",":
            pending.append(ch)
            continue
        if ch == '"':
            in_string = True
        out.append(ch)

    out.extend(pending)
    return "".join(out)


def _first_structure_index(text: str) -> int:
    positions = [p for p in (text.find("{"), text.find("[")) if p != -1]
    return min(positions) if positions else -1


def _drop_dangling_tail(text: str, container: str, string_start: int) -> str:
    """Trim tokens that cannot stand before a closer.

    Handles a trailing separator, a dangling ``"key":``, a bare key, a
    partial literal and an incomplete decimal/exponent.
    """
    while True:
        stripped = text.rstrip()

        if stripped.endswith(","):
            text = stripped[:-1]
            continue
        if stripped.endswith(":"):
            text = stripped[:-1]
            continue

        literal = _PARTIAL_LITERAL.search(stripped)
        if literal:
            text = stripped[: literal.start()] + literal.group(1)
            continue

        number = _PARTIAL_NUMBER.search(stripped)
        if number:
            text = stripped[: number.start()] + number.group(1)
            continue

        if container == "{" and stripped.endswith('"') and 0 <= string_start < len(stripped):
            before = stripped[:string_start].rstrip()
            if before.endswith("{") or before.endswith(","):
                # A string after "{" or "," inside an object is a key without value
                text = before
                string_start = -1
                continue

        return stripped
