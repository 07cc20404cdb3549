# src/version.py — v1
"""Engine version and the manifest schema versions this engine can load."""

from __future__ import annotations

__version__ = "1.2.0"

ENGINE_VERSION = __version__

# Manifests carrying any other version are rejected, never guessed.
COMPATIBLE_SCHEMA_VERSIONS: tuple[str, ...] = ("1.0.0", "1.1.0", "1.2.0")


def is_compatible(version: str) -> bool:
    """Return True if a persisted manifest version can be loaded."""
    return version in COMPATIBLE_SCHEMA_VERSIONS
