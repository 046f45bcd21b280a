"""OpenAI provider: streamed chat completions through ``AsyncOpenAI``.

Also serves every OpenAI-compatible endpoint (xAI reuses it, and YAML
``providers:`` entries of type ``openai`` can point ``base_url`` at a
local server).
"""
from __future__ import annotations

import logging
import re
from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

from ..models import TokenUsage
from .base import ImagePart, Provider, ProviderDelta, StreamRequest, api_error

logger = logging.getLogger(__name__)

_REASONING_MODEL = re.compile(r"^o[134](-|$)")


def is_completion_budget_model(model: str) -> bool:
    """o1/o3/o4 take max_completion_tokens and reject temperature."""
    return bool(_REASONING_MODEL.match(model.lower()))


class OpenAIProvider(Provider):
    """Streams from ``{base_url}/chat/completions``."""

    def __init__(
        self,
        *,
        api_key_env: str = "OPENAI_API_KEY",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 120.0,
        model_prefixes: tuple[str, ...] = ("gpt-", "o1", "o3", "o4", "chatgpt-"),
        provider_name: str = "openai",
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(
            api_key_env=api_key_env, base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
        self._prefixes = model_prefixes
        self._name = provider_name
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    def supports(self, model: str) -> bool:
        lowered = model.lower()
        if lowered.startswith("openai-"):
            lowered = lowered[len("openai-"):]
        return lowered.startswith(self._prefixes)

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
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
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(dict(m) for m in request.messages)
        if request.images and messages:
            last = messages[-1]
            last["content"] = [{"type": "text", "text": last["content"]}] + [
                _image_content(image) for image in request.images
            ]

        params: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if is_completion_budget_model(request.model):
            params["max_completion_tokens"] = request.max_tokens
        else:
            params["max_tokens"] = request.max_tokens
            params["temperature"] = request.temperature
        return params

    async def stream(self, request: StreamRequest) -> AsyncIterator[ProviderDelta]:
        params = self.build_params(request)
        client = self.client
        logger.debug(
            "%s stream model=%s messages=%d images=%d",
            self.name, request.model, len(params["messages"]), len(request.images),
        )
        try:
            response = await client.chat.completions.create(**params)
            # Leaving the block closes the HTTP response, which is how a
            # client disconnect cancels the upstream request.
            async with response:
                async for chunk in response:
                    delta = parse_chat_chunk(chunk)
                    if delta is not None:
                        yield delta
        except openai.APIStatusError as exc:
            logger.warning(
                "Provider HTTP error provider=%s status=%d", self.name, exc.status_code,
            )
            raise api_error(self.name, exc.status_code, exc.body, exc.message) from exc
        except openai.APIError as exc:
            raise api_error(self.name, None, exc.body, str(exc)) from exc


def parse_chat_chunk(chunk: Any) -> ProviderDelta | None:
    """Map one ChatCompletionChunk to a ProviderDelta."""
    text = ""
    reasoning = ""
    for choice in chunk.choices or []:
        delta = choice.delta
        if delta is None:
            continue
        text += delta.content or ""
        # Not in the OpenAI schema; xAI and other compatible servers send it.
        reasoning += getattr(delta, "reasoning_content", None) or ""
    usage = None
    if getattr(chunk, "usage", None) is not None:
        prompt = chunk.usage.prompt_tokens or 0
        completion = chunk.usage.completion_tokens or 0
        usage = TokenUsage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=chunk.usage.total_tokens or prompt + completion,
        )
    if not text and not reasoning and usage is None:
        return None
    return ProviderDelta(text=text, reasoning=reasoning, usage=usage)


def _image_content(image: ImagePart) -> dict[str, Any]:
    url = image.url
    if image.data is not None and not url.startswith("data:"):
        url = f"data:{image.mime_type};base64,{image.data}"
    return {"type": "image_url", "image_url": {"url": url}}
