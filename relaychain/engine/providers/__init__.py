"""Streaming LLM providers."""
from .base import ImagePart, Provider, ProviderDelta, StreamRequest
from .registry import ProviderRegistry, build_provider_registry
from .anthropic_provider import AnthropicProvider
from .gemini_provider import GeminiProvider
from .openai_provider import OpenAIProvider
from .xai_provider import XAIProvider

__all__ = [
    "ImagePart",
    "Provider",
    "ProviderDelta",
    "StreamRequest",
    "ProviderRegistry",
    "build_provider_registry",
    "AnthropicProvider",
    "GeminiProvider",
    "OpenAIProvider",
    "XAIProvider",
]
