"""Per-model token pricing.

Prices are USD per 1K tokens. Unknown models fall back to a flat linear
rate instead of failing, so cost estimation never breaks a stream.
"""
from __future__ import annotations

import logging

from .model_registry import normalize_model_id

logger = logging.getLogger(__name__)

# (input, output) per 1K tokens
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4": (0.03, 0.06),
    "gpt-3.5-turbo": (0.0005, 0.0015),
    "claude-3-5-sonnet-20241022": (0.003, 0.015),
    "claude-3-5-haiku-20241022": (0.00025, 0.00125),
    "claude-3-opus-20240229": (0.015, 0.075),
    "grok-beta": (0.005, 0.015),
}

FALLBACK_INPUT_PER_1K = 0.001
FALLBACK_OUTPUT_PER_1K = 0.002


def calculate_cost(
    model: str, prompt_tokens: int, completion_tokens: int,
) -> float:
    """Estimated USD cost of one call.

    Known models are rounded to five decimal places; unknown models use
    ``(prompt/1000)*0.001 + (completion/1000)*0.002`` unrounded.
    """
    pricing = MODEL_PRICING.get(normalize_model_id(model))
    if pricing is None:
        logger.warning("Unknown model pricing for %s, using default rates", model)
        return (
            (prompt_tokens / 1000) * FALLBACK_INPUT_PER_1K
            + (completion_tokens / 1000) * FALLBACK_OUTPUT_PER_1K
        )
    input_rate, output_rate = pricing
    cost = (prompt_tokens / 1000) * input_rate + (completion_tokens / 1000) * output_rate
    return round(cost, 5)


_DISPLAY_NAMES: dict[str, str] = {
    "gpt-4o": "GPT-4o",
    "gpt-4o-mini": "GPT-4o Mini",
    "gpt-4-turbo": "GPT-4 Turbo",
    "gpt-4": "GPT-4",
    "gpt-3.5-turbo": "GPT-3.5 Turbo",
    "claude-3-5-sonnet-20241022": "Claude 3.5 Sonnet",
    "claude-3-5-haiku-20241022": "Claude 3.5 Haiku",
    "claude-3-opus-20240229": "Claude 3 Opus",
    "grok-beta": "Grok Beta",
}


def get_model_display_name(model: str) -> str:
    return _DISPLAY_NAMES.get(normalize_model_id(model), model)
