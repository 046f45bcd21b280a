"""xAI provider: Grok models through AsyncOpenAI at api.x.ai.

Grok-specific request options:
    real_time_data  prepend a system preamble with the current date
    thinking_mode   ask for reasoning inside <thinking> tags; the tags
                    are stripped from content and relayed as reasoning
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import AsyncIterator

from openai import AsyncOpenAI

from .base import ProviderDelta, StreamRequest, ThinkingTagSplitter
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

_REAL_TIME_PREAMBLE = (
    "You have access to current information. Today is {date}. "
    "Prefer recent developments when they are relevant."
)
_THINKING_INSTRUCTION = (
    "Before answering, reason step by step inside <thinking></thinking> "
    "tags. Put the final answer after the closing tag."
)


class XAIProvider(OpenAIProvider):
    """Streams Grok completions from api.x.ai."""

    def __init__(
        self,
        *,
        api_key_env: str = "XAI_API_KEY",
        base_url: str = "https://api.x.ai/v1",
        timeout_seconds: float = 120.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(
            api_key_env=api_key_env,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            model_prefixes=("grok-",),
            provider_name="xai",
            client=client,
        )

    def supports(self, model: str) -> bool:
        lowered = model.lower()
        if lowered.startswith("xai-"):
            lowered = lowered[len("xai-"):]
        return lowered.startswith("grok")

    def _system_prompt(self, request: StreamRequest) -> str | None:
        parts = [request.system_prompt] if request.system_prompt else []
        if request.options.get("real_time_data"):
            today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            parts.append(_REAL_TIME_PREAMBLE.format(date=today))
        if request.options.get("thinking_mode"):
            parts.append(_THINKING_INSTRUCTION)
        return "\n\n".join(parts) or None

    async def stream(self, request: StreamRequest) -> AsyncIterator[ProviderDelta]:
        request.system_prompt = self._system_prompt(request)
        if not request.options.get("thinking_mode"):
            async for delta in super().stream(request):
                yield delta
            return

        splitter = ThinkingTagSplitter()
        async for delta in super().stream(request):
            content, reasoning = splitter.feed(delta.text)
            if content or reasoning or delta.reasoning or delta.usage:
                yield ProviderDelta(
                    text=content,
                    reasoning=delta.reasoning + reasoning,
                    usage=delta.usage,
                )
        content, reasoning = splitter.flush()
        if content or reasoning:
            yield ProviderDelta(text=content, reasoning=reasoning)
