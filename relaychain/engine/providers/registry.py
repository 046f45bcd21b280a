"""Provider registry: resolves a model id to the provider that serves it."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import ProviderError
from .base import Provider

if TYPE_CHECKING:
    from ..model_registry import ModelRegistry
    from ..yaml_config import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Ordered registry of streaming providers.

    ``resolve()`` honours an explicit provider named by the model
    registry, otherwise returns the first provider whose
    ``supports(model)`` is true. Registration order is precedence.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, name: str, provider: Provider) -> None:
        """Register a provider by name."""
        self._providers[name] = provider
        logger.info(
            "Provider registered: %s (available=%s)",
            name, provider.is_available(),
        )

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def list_names(self) -> list[str]:
        return list(self._providers.keys())

    def resolve(self, model: str, models: ModelRegistry | None = None) -> Provider:
        """Return the provider for ``model`` or raise ProviderError."""
        if models is not None:
            capability = models.get(model)
            if capability is not None and capability.provider != "auto":
                provider = self._providers.get(capability.provider)
                if provider is not None:
                    return provider
        for provider in self._providers.values():
            if provider.supports(model):
                return provider
        available = ", ".join(self._providers) or "none"
        raise ProviderError(
            "registry",
            f"No provider supports model '{model}'. Registered: {available}",
        )

    def get_availability_report(self) -> dict[str, bool]:
        return {name: p.is_available() for name, p in self._providers.items()}

    def validate(self) -> dict[str, bool]:
        """Log which providers have credentials configured."""
        report = self.get_availability_report()
        available = [n for n, ok in report.items() if ok]
        unavailable = [n for n, ok in report.items() if not ok]
        if available:
            logger.info("Available providers: %s", ", ".join(available))
        if unavailable:
            logger.warning(
                "Providers without API keys: %s", ", ".join(unavailable),
            )
        return report

    async def shutdown_all(self) -> None:
        """Close every provider's HTTP session."""
        for name, provider in self._providers.items():
            try:
                await provider.shutdown()
            except Exception as exc:
                logger.error("Error shutting down provider '%s': %s", name, exc)

    @property
    def count(self) -> int:
        return len(self._providers)


def build_provider_registry(
    provider_configs: dict[str, ProviderConfig] | None = None,
    *,
    timeout_seconds: float = 120.0,
) -> ProviderRegistry:
    """Build a ProviderRegistry from YAML-sourced provider configs.

    With no configs, registers the four built-in providers with their
    default env vars. Configured providers are registered first so they
    take precedence in capability lookup.
    """
    from .anthropic_provider import AnthropicProvider
    from .gemini_provider import GeminiProvider
    from .openai_provider import OpenAIProvider
    from .xai_provider import XAIProvider

    registry = ProviderRegistry()

    for name, cfg in (provider_configs or {}).items():
        kwargs: dict = {"timeout_seconds": timeout_seconds}
        if cfg.api_key_env:
            kwargs["api_key_env"] = cfg.api_key_env
        if cfg.base_url:
            kwargs["base_url"] = cfg.base_url

        if cfg.type == "openai":
            if cfg.model_prefixes:
                kwargs["model_prefixes"] = tuple(cfg.model_prefixes)
            registry.register(name, OpenAIProvider(provider_name=name, **kwargs))
        elif cfg.type == "xai":
            registry.register(name, XAIProvider(**kwargs))
        elif cfg.type == "anthropic":
            registry.register(name, AnthropicProvider(**kwargs))
        elif cfg.type in ("google", "gemini"):
            registry.register(name, GeminiProvider(**kwargs))
        else:
            logger.warning(
                "Unknown provider type '%s' for '%s', skipping", cfg.type, name,
            )

    defaults = (
        ("openai", lambda: OpenAIProvider(timeout_seconds=timeout_seconds)),
        ("anthropic", lambda: AnthropicProvider(timeout_seconds=timeout_seconds)),
        ("xai", lambda: XAIProvider(timeout_seconds=timeout_seconds)),
        ("google", lambda: GeminiProvider(timeout_seconds=timeout_seconds)),
    )
    for name, factory in defaults:
        if registry.get(name) is None:
            registry.register(name, factory())

    registry.validate()
    return registry
