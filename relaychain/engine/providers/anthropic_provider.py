"""Anthropic provider: streamed messages through ``AsyncAnthropic``.

Images must be inline base64 blocks, so attachments are fetched first.
Extended thinking (``thinking_budget`` in claude options) streams
``thinking_delta`` events which are relayed as reasoning.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import anthropic
from anthropic import AsyncAnthropic

from ..models import TokenUsage
from .base import Provider, ProviderDelta, StreamRequest, api_error

logger = logging.getLogger(__name__)


class AnthropicProvider(Provider):
    """Streams from the messages endpoint under ``base_url``."""

    inline_images = True

    def __init__(
        self,
        *,
        api_key_env: str = "ANTHROPIC_API_KEY",
        base_url: str = "https://api.anthropic.com",
        timeout_seconds: float = 120.0,
        client: AsyncAnthropic | None = None,
    ) -> None:
        super().__init__(
            api_key_env=api_key_env, base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
        self._client = client

    @property
    def name(self) -> str:
        return "anthropic"

    def supports(self, model: str) -> bool:
        lowered = model.lower()
        if lowered.startswith("anthropic-"):
            lowered = lowered[len("anthropic-"):]
        return lowered.startswith("claude")

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self._timeout_seconds,
            )
        return self._client

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        await super().shutdown()

    def build_params(self, request: StreamRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [
            {"role": m["role"], "content": m["content"]}
            for m in request.messages if m["role"] in ("user", "assistant")
        ]
        if request.images and messages:
            last = messages[-1]
            blocks: list[dict[str, Any]] = [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.mime_type,
                        "data": image.data,
                    },
                }
                for image in request.images if image.data
            ]
            blocks.append({"type": "text", "text": last["content"]})
            last["content"] = blocks

        params: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "stream": True,
        }
        if request.system_prompt:
            params["system"] = request.system_prompt
        budget = request.options.get("thinking_budget")
        if budget:
            # Extended thinking requires the default temperature.
            params["thinking"] = {"type": "enabled", "budget_tokens": int(budget)}
            params["max_tokens"] = max(request.max_tokens, int(budget) + 1024)
        else:
            params["temperature"] = request.temperature
        return params

    async def stream(self, request: StreamRequest) -> AsyncIterator[ProviderDelta]:
        params = self.build_params(request)
        client = self.client
        prompt_tokens = 0
        completion_tokens = 0
        try:
            response = await client.messages.create(**params)
            async with response:
                async for event in response:
                    if event.type == "message_start":
                        usage = event.message.usage
                        prompt_tokens = usage.input_tokens or 0
                        completion_tokens = usage.output_tokens or 0
                    elif event.type == "content_block_delta":
                        if event.delta.type == "text_delta":
                            yield ProviderDelta(text=event.delta.text)
                        elif event.delta.type == "thinking_delta":
                            yield ProviderDelta(reasoning=event.delta.thinking)
                    elif event.type == "message_delta":
                        completion_tokens = event.usage.output_tokens or completion_tokens
                        yield ProviderDelta(usage=TokenUsage(
                            prompt_tokens=prompt_tokens,
                            completion_tokens=completion_tokens,
                            total_tokens=prompt_tokens + completion_tokens,
                        ))
        except anthropic.APIStatusError as exc:
            logger.warning(
                "Provider HTTP error provider=%s status=%d", self.name, exc.status_code,
            )
            raise api_error(self.name, exc.status_code, exc.body, exc.message) from exc
        except anthropic.APIError as exc:
            raise api_error(self.name, None, exc.body, str(exc)) from exc
