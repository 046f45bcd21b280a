"""Google Gemini provider: streamed generation through ``google.generativeai``."""
from __future__ import annotations

import base64
import logging
from typing import Any, AsyncIterator
from urllib.parse import urlsplit

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from ..models import TokenUsage
from .base import Provider, ProviderDelta, StreamRequest, api_error

logger = logging.getLogger(__name__)


class GeminiProvider(Provider):
    """Streams from the Generative Language API."""

    inline_images = True

    def __init__(
        self,
        *,
        api_key_env: str = "GOOGLE_API_KEY",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout_seconds: float = 120.0,
    ) -> None:
        super().__init__(
            api_key_env=api_key_env, base_url=base_url,
            timeout_seconds=timeout_seconds,
        )

    @property
    def name(self) -> str:
        return "google"

    def supports(self, model: str) -> bool:
        lowered = model.lower()
        if lowered.startswith("google-"):
            lowered = lowered[len("google-"):]
        return lowered.startswith("gemini")

    def build_contents(self, request: StreamRequest) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in request.messages:
            role = "model" if message["role"] == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message["content"]}]})
        if request.images and contents:
            contents[-1]["parts"].extend(
                {
                    "inline_data": {
                        "mime_type": image.mime_type,
                        "data": base64.b64decode(image.data),
                    },
                }
                for image in request.images if image.data
            )
        return contents

    def _model(self, request: StreamRequest) -> genai.GenerativeModel:
        genai.configure(
            api_key=self.api_key,
            client_options={"api_endpoint": urlsplit(self.base_url).netloc or self.base_url},
        )
        model = request.model
        if model.lower().startswith("google-"):
            model = model[len("google-"):]
        return genai.GenerativeModel(model, system_instruction=request.system_prompt)

    async def stream(self, request: StreamRequest) -> AsyncIterator[ProviderDelta]:
        model = self._model(request)
        config = genai.types.GenerationConfig(
            max_output_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        try:
            response = await model.generate_content_async(
                self.build_contents(request),
                generation_config=config,
                stream=True,
                request_options={"timeout": self._timeout_seconds},
            )
            async for chunk in response:
                delta = parse_gemini_chunk(chunk)
                if delta is not None:
                    yield delta
        except google_exceptions.GoogleAPICallError as exc:
            status = int(exc.code) if exc.code is not None else None
            logger.warning("Provider API error provider=%s status=%s", self.name, status)
            raise api_error(self.name, status, None, exc.message) from exc


def parse_gemini_chunk(chunk: Any) -> ProviderDelta | None:
    """Map one streamed GenerateContentResponse to a ProviderDelta."""
    text = ""
    reasoning = ""
    for candidate in chunk.candidates or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "thought", False):
                reasoning += part.text or ""
            else:
                text += getattr(part, "text", "") or ""
    usage = None
    meta = getattr(chunk, "usage_metadata", None)
    if meta is not None and meta.total_token_count:
        usage = TokenUsage(
            prompt_tokens=meta.prompt_token_count or 0,
            completion_tokens=meta.candidates_token_count or 0,
            total_tokens=meta.total_token_count,
        )
    if not text and not reasoning and usage is None:
        return None
    return ProviderDelta(text=text, reasoning=reasoning, usage=usage)
