# src/patch/redaction.py — v1
"""Shrink a document before it is sent to the service as context.

Embedded binary payloads are replaced by fixed opaque tokens so the
service never has to read or reproduce multi-kilobyte blobs, and the
build's asset payload is injected back after generation.
"""

from __future__ import annotations

import json
import re

BASE64_PLACEHOLDER = "<BASE64_DATA_HIDDEN>"
GEOMETRY_PLACEHOLDER = "[...GEOMETRY_DATA_HIDDEN...]"

_DATA_URI = re.compile(r"data:[a-z]+/[a-z0-9.+-]+;base64,[A-Za-z0-9+/=]+", re.IGNORECASE)
# 11 or more numbers in one array literal
_NUMERIC_ARRAY = re.compile(r"\[(?:\s*-?\d*\.?\d+\s*,){10,}\s*-?\d*\.?\d+\s*\]")


def redact_binary_blocks(document: str) -> str:
    """Replace data URIs and large numeric arrays with placeholder tokens."""
    if not document:
        return ""
    redacted = _DATA_URI.sub(BASE64_PLACEHOLDER, document)
    return _NUMERIC_ARRAY.sub(GEOMETRY_PLACEHOLDER, redacted)


def inject_asset_payload(document: str, assets: dict[str, str]) -> str:
    """Define ``window.FORGE_ASSETS`` at the top of the document.

    The block goes right after ``<head>``, or is prepended when the
    document has no head. A document is returned unchanged when there are
    no assets.
    """
    if not assets:
        return document
    payload = json.dumps(assets, sort_keys=True)
    script = (
        "<script>\n"
        f"window.FORGE_ASSETS = {payload};\n"
        "</script>"
    )
    if "<head>" in document:
        return document.replace("<head>", f"<head>{script}", 1)
    return f"{script}\n{document}"


def asset_reference(key: str) -> str:
    """Lightweight reference the service sees instead of the asset data."""
    return f"window.FORGE_ASSETS['{key}']"
