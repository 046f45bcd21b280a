"""StreamAdapter: one canonical Chunk sequence for every provider.

Content chunks carry text deltas. The sequence ends with exactly one
terminal chunk: ``complete`` (full text plus token usage) or ``error``
(human-readable message). Provider and transport failures never raise
past this generator.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp

from .config import EngineConfig
from .errors import ProviderError
from .model_registry import ModelRegistry, normalize_model_id
from .models import Chunk, ImageAttachment, TokenUsage
from .providers.base import StreamRequest
from .providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass
class StreamOptions:
    """Per-request extras that shape the prompt or provider body."""
    audio_transcription: str | None = None
    web_search_results: Any = None
    grok_options: dict[str, Any] = field(default_factory=dict)
    claude_options: dict[str, Any] = field(default_factory=dict)
    system_prompt: str | None = None
    # Earlier turns as {"role": ..., "content": ...} dicts.
    history: list[dict[str, str]] = field(default_factory=list)
    max_tokens: int | None = None
    temperature: float | None = None

    def provider_options(self, provider_name: str) -> dict[str, Any]:
        if provider_name == "xai":
            return dict(self.grok_options)
        if provider_name == "anthropic":
            return dict(self.claude_options)
        return {}

    def requests_reasoning(self, provider_name: str) -> bool:
        """True when the provider was asked for its own reasoning trace."""
        if provider_name == "xai":
            return bool(self.grok_options.get("thinking_mode"))
        if provider_name == "anthropic":
            return bool(self.claude_options.get("thinking_budget"))
        return False


def format_web_search_results(results: Any) -> str:
    """Render search results as a numbered list."""
    if isinstance(results, str):
        return results.strip()
    lines: list[str] = []
    for i, item in enumerate(results or [], start=1):
        if isinstance(item, dict):
            title = item.get("title") or item.get("url") or f"Result {i}"
            url = item.get("url") or item.get("link") or ""
            snippet = item.get("content") or item.get("snippet") or ""
            header = f"[{i}] {title}" + (f" ({url})" if url else "")
            lines.append(f"{header}\n{snippet}".rstrip())
        else:
            lines.append(f"[{i}] {item}")
    return "\n\n".join(lines)


def augment_prompt(prompt: str, options: StreamOptions | None) -> str:
    """Append transcription and search-result sections to the prompt."""
    if options is None:
        return prompt
    sections = [prompt]
    if options.audio_transcription and options.audio_transcription.strip():
        sections.append(
            "Audio transcription:\n" + options.audio_transcription.strip()
        )
    if options.web_search_results:
        rendered = format_web_search_results(options.web_search_results)
        if rendered:
            sections.append("Web search results:\n" + rendered)
    return "\n\n".join(sections)


class StreamAdapter:
    """Resolves the provider for a model and normalises its stream."""

    def __init__(
        self,
        providers: ProviderRegistry,
        models: ModelRegistry | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._providers = providers
        self._models = models
        self._config = config or EngineConfig()

    def provider_name(self, model: str) -> str:
        """Provider family serving ``model``, or ``"default"``."""
        try:
            return self._providers.resolve(model, self._models).name
        except ProviderError:
            return "default"

    async def stream(
        self,
        model: str,
        prompt: str,
        attachments: list[ImageAttachment] | None = None,
        *,
        options: StreamOptions | None = None,
    ) -> AsyncIterator[Chunk]:
        try:
            provider = self._providers.resolve(model, self._models)
        except ProviderError as exc:
            logger.warning("StreamAdapter: %s", exc)
            yield Chunk.failure(str(exc))
            return

        options = options or StreamOptions()
        messages = list(options.history) + [
            {"role": "user", "content": augment_prompt(prompt, options)},
        ]
        request = StreamRequest(
            model=normalize_model_id(model),
            messages=messages,
            max_tokens=options.max_tokens or self._config.max_tokens,
            temperature=(
                options.temperature if options.temperature is not None
                else self._config.temperature
            ),
            system_prompt=options.system_prompt,
            options=options.provider_options(provider.name),
        )

        parts: list[str] = []
        usage: TokenUsage | None = None
        deltas = 0
        try:
            if attachments:
                request.images = await provider.prepare_images(attachments)
            async with aclosing(provider.stream(request)) as upstream:
                async for delta in upstream:
                    if delta.reasoning:
                        yield Chunk.reasoning(delta.reasoning)
                    if delta.text:
                        parts.append(delta.text)
                        deltas += 1
                        yield Chunk.text(delta.text)
                    if delta.usage is not None:
                        usage = delta.usage
        except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            message = str(exc) or type(exc).__name__
            logger.warning(
                "StreamAdapter error provider=%s model=%s deltas=%d: %s",
                provider.name, model, deltas, message,
            )
            yield Chunk.failure(message)
            return
        except Exception as exc:
            logger.exception(
                "StreamAdapter unexpected error provider=%s model=%s",
                provider.name, model,
            )
            yield Chunk.failure(str(exc) or type(exc).__name__)
            return

        logger.debug(
            "StreamAdapter complete provider=%s model=%s deltas=%d",
            provider.name, model, deltas,
        )
        yield Chunk.done("".join(parts), usage)
