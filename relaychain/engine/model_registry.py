"""Model capability registry.

Holds the allow-list of models the server accepts and what each one
can do (vision input, native reasoning). Provider *selection* is not
done here; each provider adapter answers ``supports(model)`` itself and
the ProviderRegistry picks the first match. This registry only answers
capability questions the adapters and validators need.

Example YAML additions (see yaml_config.py):
    models:
      gpt-4.1:
        provider: openai
        vision: true
      my-local-llama:
        provider: openai
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Legacy ids were stored with a provider prefix ("openai-gpt-4o").
_PROVIDER_PREFIX = re.compile(r"^(openai-|anthropic-|xai-|google-)")


def normalize_model_id(model: str) -> str:
    """Lower-case a model id and strip any legacy provider prefix."""
    return _PROVIDER_PREFIX.sub("", model.strip().lower())


@dataclass(frozen=True)
class ModelCapability:
    """Describes what a single model accepts."""
    model_id: str
    provider: str
    vision: bool = False
    # Native reasoning model (o-series): uses a completion-token budget
    # instead of max_tokens and rejects temperature.
    reasoning: bool = False
    display_name: str | None = None


_BUILTIN: tuple[ModelCapability, ...] = (
    # OpenAI
    ModelCapability("gpt-4o", "openai", vision=True, display_name="GPT-4o"),
    ModelCapability("gpt-4o-mini", "openai", vision=True, display_name="GPT-4o Mini"),
    ModelCapability("gpt-4-turbo", "openai", vision=True, display_name="GPT-4 Turbo"),
    ModelCapability("gpt-4", "openai", display_name="GPT-4"),
    ModelCapability("gpt-4.1", "openai", vision=True, display_name="GPT-4.1"),
    ModelCapability("gpt-3.5-turbo", "openai", display_name="GPT-3.5 Turbo"),
    ModelCapability("o1", "openai", reasoning=True, display_name="o1"),
    ModelCapability("o1-preview", "openai", reasoning=True, display_name="o1 Preview"),
    ModelCapability("o1-mini", "openai", reasoning=True, display_name="o1 Mini"),
    ModelCapability("o3-mini", "openai", reasoning=True, display_name="o3 Mini"),
    ModelCapability("o4-mini", "openai", reasoning=True, display_name="o4 Mini"),
    # Anthropic
    ModelCapability(
        "claude-3-5-sonnet-20241022", "anthropic", vision=True,
        display_name="Claude 3.5 Sonnet",
    ),
    ModelCapability(
        "claude-3-5-haiku-20241022", "anthropic", vision=True,
        display_name="Claude 3.5 Haiku",
    ),
    ModelCapability(
        "claude-3-opus-20240229", "anthropic", vision=True,
        display_name="Claude 3 Opus",
    ),
    ModelCapability(
        "claude-sonnet-4-20250514", "anthropic", vision=True,
        display_name="Claude Sonnet 4",
    ),
    ModelCapability(
        "claude-opus-4-20250514", "anthropic", vision=True,
        display_name="Claude Opus 4",
    ),
    # xAI
    ModelCapability("grok-beta", "xai", display_name="Grok Beta"),
    ModelCapability("grok-2-1212", "xai", display_name="Grok 2"),
    ModelCapability("grok-2-vision-1212", "xai", vision=True, display_name="Grok 2 Vision"),
    ModelCapability("grok-3", "xai", display_name="Grok 3"),
    ModelCapability("grok-3-mini", "xai", display_name="Grok 3 Mini"),
    # Google
    ModelCapability("gemini-1.5-pro", "google", vision=True, display_name="Gemini 1.5 Pro"),
    ModelCapability("gemini-2.0-flash", "google", vision=True, display_name="Gemini 2.0 Flash"),
    ModelCapability("gemini-2.5-pro", "google", vision=True, display_name="Gemini 2.5 Pro"),
)


class ModelRegistry:
    """Allow-list of accepted models with their capabilities."""

    def __init__(self, models: tuple[ModelCapability, ...] | None = None) -> None:
        self._models: dict[str, ModelCapability] = {}
        for cap in models if models is not None else _BUILTIN:
            self.register(cap)

    def register(self, capability: ModelCapability) -> None:
        self._models[normalize_model_id(capability.model_id)] = capability

    def get(self, model: str) -> ModelCapability | None:
        return self._models.get(normalize_model_id(model))

    def is_allowed(self, model: str) -> bool:
        return normalize_model_id(model) in self._models

    def list_models(self) -> list[ModelCapability]:
        return list(self._models.values())

    def allowed_ids(self) -> list[str]:
        return [cap.model_id for cap in self._models.values()]

    def supports_vision(self, model: str) -> bool:
        cap = self.get(model)
        return bool(cap and cap.vision)

    def uses_completion_budget(self, model: str) -> bool:
        """True for models that take ``max_completion_tokens``."""
        cap = self.get(model)
        if cap is not None:
            return cap.reasoning
        return bool(re.match(r"^o[134](-|$)", normalize_model_id(model)))

    def display_name(self, model: str) -> str:
        cap = self.get(model)
        if cap and cap.display_name:
            return cap.display_name
        return model


def is_reasoning_model(model: str) -> bool:
    """Models whose scripted thinking uses the "reasoning" flavour."""
    lowered = normalize_model_id(model)
    return (
        "o1" in lowered
        or "o3" in lowered
        or "o4" in lowered
        or "claude-3-opus" in lowered
        or ("grok" in lowered and "thinking" in lowered)
    )


def build_model_registry(extra: dict[str, dict] | None = None,
                         extra_ids: list[str] | None = None) -> ModelRegistry:
    """Built-in registry extended with YAML ``models:`` entries and env ids.

    Env-provided ids (RELAY_EXTRA_MODELS) carry no provider; they are
    registered with provider ``"auto"`` and left to ``supports()``.
    """
    registry = ModelRegistry()
    for model_id, raw in (extra or {}).items():
        raw = raw or {}
        registry.register(ModelCapability(
            model_id=model_id,
            provider=str(raw.get("provider", "auto")),
            vision=bool(raw.get("vision", False)),
            reasoning=bool(raw.get("reasoning", False)),
            display_name=raw.get("display_name"),
        ))
    for model_id in extra_ids or []:
        if not registry.is_allowed(model_id):
            registry.register(ModelCapability(model_id=model_id, provider="auto"))
    logger.info("Model registry built: %d models", len(registry.list_models()))
    return registry
