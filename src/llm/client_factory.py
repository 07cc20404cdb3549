# src/llm/client_factory.py — v3
"""Factory: instantiate a generation client from a provider name.

The resulting client is injected into the pipeline controller; switching
backends at runtime goes through ``PipelineController.set_backend``.
"""

from __future__ import annotations

import importlib
import logging

from dreamforge.config.settings import Settings
from dreamforge.llm.base_client import BaseGenerationClient

logger = logging.getLogger(__name__)

# Registry of provider name → adapter class path (lazy import).
_PROVIDER_REGISTRY: dict[str, str] = {
    "openrouter": "dreamforge.llm.adapters.openrouter_adapter.OpenRouterAdapter",
    "google": "dreamforge.llm.adapters.google_adapter.GoogleAdapter",
}


class UnsupportedProviderError(ValueError):
    """Raised when a provider is not registered."""


def create_generation_client(
    provider: str,
    model: str,
    settings: Settings | None = None,
    **kwargs: object,
) -> BaseGenerationClient:
    """Instantiate the adapter for ``provider``.

    Args:
        provider: Provider identifier (openrouter, google).
        model: Model name passed to the adapter.
        settings: Application settings (for API keys and base URLs).
        **kwargs: Additional adapter arguments; they win over settings.

    Raises:
        UnsupportedProviderError: If provider is not registered.
    """
    if provider not in _PROVIDER_REGISTRY:
        raise UnsupportedProviderError(
            f"Unsupported generation provider: {provider!r}. "
            f"Available: {', '.join(sorted(_PROVIDER_REGISTRY))}"
        )

    adapter_cls = _import_class(_PROVIDER_REGISTRY[provider])

    init_kwargs = dict(kwargs)
    init_kwargs["model"] = model
    if settings is not None:
        if provider == "openrouter":
            init_kwargs.setdefault("api_key", settings.openrouter_api_key)
            init_kwargs.setdefault("base_url", settings.openrouter_base_url)
        elif provider == "google":
            init_kwargs.setdefault("api_key", settings.google_api_key)

    logger.debug("Creating generation client: provider=%s, model=%s", provider, model)
    return adapter_cls(**init_kwargs)


def create_default_client(settings: Settings) -> BaseGenerationClient:
    """Client for the configured default provider and model."""
    return create_generation_client(
        settings.llm_default_provider, settings.llm_default_model, settings
    )


def register_provider(name: str, class_path: str) -> None:
    """Register a custom adapter under ``name``."""
    _PROVIDER_REGISTRY[name] = class_path
    logger.info("Registered generation provider: %s -> %s", name, class_path)


def available_providers() -> list[str]:
    return sorted(_PROVIDER_REGISTRY)


def _import_class(class_path: str) -> type:
    """Dynamically import a class from its fully qualified path."""
    module_path, class_name = class_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)
