# src/config/settings.py — v1
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for backend selection, generation defaults,
retry/time-box policy, manifest defaults and logging.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dreamforge.core.models import GenerationSettings


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


KNOWN_PROVIDERS = ("openrouter", "google")


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === GENERATION BACKEND ===
    llm_default_provider: str = "openrouter"
    llm_default_model: str = "google/gemini-3-pro-preview"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    google_api_key: str = ""

    # === Generation defaults ===
    generation_creativity: float = 0.7
    generation_max_output_size: int = 65536
    generation_nucleus_p: float = 0.95
    generation_pool_size: int = 40

    # === Retry ===
    retry_max_retries: int = 2
    retry_base_delay_s: float = 1.0

    # === Time boxes ===
    secondary_timeout_s: float = 20.0
    build_timeout_s: float = 180.0
    min_build_chars: int = 500

    # === Manifest defaults ===
    manifest_platform: str = "web"
    manifest_quality: str = "prototype"

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("retry_max_retries", "min_build_chars")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:  # noqa: N805
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("generation_creativity")
    @classmethod
    def validate_creativity(cls, v: float) -> float:  # noqa: N805
        if not 0.0 <= v <= 2.0:
            raise ValueError("generation_creativity must be within 0.0-2.0")
        return v

    @field_validator("generation_nucleus_p")
    @classmethod
    def validate_nucleus_p(cls, v: float) -> float:  # noqa: N805
        if not 0.0 <= v <= 1.0:
            raise ValueError("generation_nucleus_p must be within 0.0-1.0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.llm_default_provider not in KNOWN_PROVIDERS:
            errors.append(
                f"LLM_DEFAULT_PROVIDER must be one of {', '.join(KNOWN_PROVIDERS)}"
            )

        if self.secondary_timeout_s <= 0 or self.build_timeout_s <= 0:
            errors.append("Stage timeouts must be positive")
        elif self.secondary_timeout_s >= self.build_timeout_s:
            errors.append("SECONDARY_TIMEOUT_S must be < BUILD_TIMEOUT_S")

        if self.retry_base_delay_s < 0:
            errors.append("RETRY_BASE_DELAY_S must be >= 0")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def generation_defaults(self) -> GenerationSettings:
        """Default sampling knobs for every stage."""
        return GenerationSettings(
            creativity=self.generation_creativity,
            max_output_size=self.generation_max_output_size,
            nucleus_p=self.generation_nucleus_p,
            pool_size=self.generation_pool_size,
        )


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-session config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
