# src/manifest/manifest.py — v1
"""Build manifest: integrity and version record of a completed build.

Hashes are pure functions of their input text: the specification is
serialized with sorted keys before hashing, so equal specifications give
equal hashes regardless of key order.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dreamforge.core.errors import IncompatibleManifestError
from dreamforge.version import COMPATIBLE_SCHEMA_VERSIONS, ENGINE_VERSION, is_compatible

logger = logging.getLogger(__name__)

HASH_LENGTH = 16


class BuildManifest(BaseModel):
    """Persisted as ``{version, timestamp, seed, specHash, buildHash, platform, quality}``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    version: str = ENGINE_VERSION
    timestamp: int = Field(description="Unix epoch milliseconds")
    seed: str
    spec_hash: str
    build_hash: str
    platform: str
    quality: str
    parent_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


def stable_serialize(value: Any) -> str:
    """Canonical JSON text: sorted keys, compact separators."""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def short_hash(text: str) -> str:
    """First 16 hex chars of the SHA-256 of ``text``."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def create_manifest(
    spec: Any,
    build_text: str,
    seed: str,
    platform: str,
    quality: str,
    parent_hash: str | None = None,
    timestamp: int | None = None,
) -> BuildManifest:
    """Sign a build.

    Args:
        spec: Specification artifact (mapping or text).
        build_text: Final build document.
        seed: Caller seed.
        platform: Target platform label.
        quality: Quality tier label.
        parent_hash: Build hash of the build this one was refined from.
        timestamp: Epoch ms; defaults to now.
    """
    manifest = BuildManifest(
        version=ENGINE_VERSION,
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        seed=seed,
        spec_hash=short_hash(stable_serialize(spec)),
        build_hash=short_hash(build_text),
        platform=platform,
        quality=quality,
        parent_hash=parent_hash,
    )
    logger.debug("Signed build manifest: spec=%s build=%s", manifest.spec_hash, manifest.build_hash)
    return manifest


def load_manifest(data: str | dict[str, Any]) -> BuildManifest:
    """Load a persisted manifest, rejecting unknown schema versions.

    Raises:
        IncompatibleManifestError: Version missing or not in the allow-list.
        pydantic.ValidationError: Other fields malformed.
    """
    raw = json.loads(data) if isinstance(data, str) else dict(data)
    version = raw.get("version")
    if not isinstance(version, str) or not is_compatible(version):
        raise IncompatibleManifestError(
            f"Unsupported manifest version {version!r}; "
            f"compatible versions: {', '.join(COMPATIBLE_SCHEMA_VERSIONS)}"
        )
    return BuildManifest.model_validate(raw)


def verify_build(manifest: BuildManifest, spec: Any, build_text: str) -> bool:
    """True if ``spec`` and ``build_text`` hash to the manifest's values."""
    return (
        manifest.spec_hash == short_hash(stable_serialize(spec))
        and manifest.build_hash == short_hash(build_text)
    )
