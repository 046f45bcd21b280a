"""Abstract base for LLM streaming providers.

Each provider wraps one vendor SDK (openai, anthropic,
google-generativeai) and yields ``ProviderDelta`` objects, which the
StreamAdapter turns into the canonical Chunk sequence. Image
attachments that must be sent inline are fetched over a shared
``aiohttp.ClientSession``.
"""
from __future__ import annotations

import abc
import base64
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp

from ..errors import ProviderError
from ..models import ImageAttachment, TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class ProviderDelta:
    """One increment from a provider stream."""
    text: str = ""
    reasoning: str = ""
    # Cumulative usage as reported so far; the last non-None value wins.
    usage: TokenUsage | None = None


@dataclass
class ImagePart:
    """An image ready for a provider request.

    ``data`` holds base64 bytes when the provider needs inline images;
    otherwise only ``url`` is set.
    """
    url: str
    mime_type: str = "image/jpeg"
    data: str | None = None


@dataclass
class StreamRequest:
    """Everything a provider needs for one streaming call."""
    model: str
    messages: list[dict[str, str]]
    max_tokens: int = 4000
    temperature: float = 0.7
    system_prompt: str | None = None
    images: list[ImagePart] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)


class Provider(abc.ABC):
    """Abstract streaming provider.

    Implementations:
    - OpenAIProvider: AsyncOpenAI chat completions (gpt-*, o-series)
    - XAIProvider: AsyncOpenAI pointed at api.x.ai (grok-*)
    - AnthropicProvider: AsyncAnthropic messages (claude-*)
    - GeminiProvider: google.generativeai streaming (gemini-*)
    """

    # Providers that cannot take image URLs get base64 inline data.
    inline_images: bool = False

    def __init__(
        self,
        *,
        api_key_env: str,
        base_url: str,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._api_key_env = api_key_env
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'openai', 'anthropic')."""

    @abc.abstractmethod
    def supports(self, model: str) -> bool:
        """True when this provider can serve ``model``."""

    @abc.abstractmethod
    def stream(self, request: StreamRequest) -> AsyncIterator[ProviderDelta]:
        """Stream one completion.

        SDK failures are re-raised as ProviderError; the StreamAdapter
        converts those into an error chunk.
        """

    def is_available(self) -> bool:
        """Check whether an API key is configured."""
        return bool(os.getenv(self._api_key_env))

    @property
    def api_key(self) -> str:
        key = os.getenv(self._api_key_env)
        if not key:
            raise ProviderError(
                self.name, f"{self._api_key_env} is not set",
            )
        return key

    @property
    def base_url(self) -> str:
        return self._base_url

    def http_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def shutdown(self) -> None:
        """Close the image-fetch session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def prepare_images(self, images: list[ImageAttachment]) -> list[ImagePart]:
        """Turn attachments into ImageParts, inlining bytes if required."""
        parts: list[ImagePart] = []
        for image in images:
            mime = image.mime_type or "image/jpeg"
            if image.url.startswith("data:"):
                mime, data = decode_data_url(image.url)
                parts.append(ImagePart(url=image.url, mime_type=mime, data=data))
            elif self.inline_images:
                parts.append(await self._fetch_image(image.url, mime))
            else:
                parts.append(ImagePart(url=image.url, mime_type=mime))
        return parts

    async def _fetch_image(self, url: str, mime: str) -> ImagePart:
        session = self.http_session()
        async with session.get(url) as resp:
            if resp.status != 200:
                raise ProviderError(
                    self.name, f"Failed to fetch image {url}: HTTP {resp.status}",
                    status=resp.status,
                )
            raw = await resp.read()
            mime = resp.headers.get("Content-Type", mime).split(";")[0].strip() or mime
        return ImagePart(url=url, mime_type=mime, data=base64.b64encode(raw).decode("ascii"))


def decode_data_url(url: str) -> tuple[str, str]:
    """Split a ``data:`` URL into (mime_type, base64 payload)."""
    header, _, payload = url.partition(",")
    mime = header[5:].split(";")[0] or "image/jpeg"
    if ";base64" not in header:
        payload = base64.b64encode(payload.encode("utf-8")).decode("ascii")
    return mime, payload


def api_error(provider: str, status: int | None, body: Any, fallback: str) -> ProviderError:
    """ProviderError for an HTTP failure reported by a vendor SDK."""
    message = fallback or "no details"
    error = body.get("error", body) if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        message = str(error["message"])
    elif isinstance(error, str) and error:
        message = error
    if status is None:
        return ProviderError(provider, message)
    return ProviderError(provider, f"{provider} API error {status}: {message}", status=status)


class ThinkingTagSplitter:
    """Separate ``<thinking>...</thinking>`` spans from streamed text.

    Tags may be split across deltas, so a short tail that could be the
    start of a tag is held back until the next feed.
    """

    OPEN = "<thinking>"
    CLOSE = "</thinking>"

    def __init__(self) -> None:
        self._buffer = ""
        self._inside = False

    def feed(self, text: str) -> tuple[str, str]:
        """Return ``(content, reasoning)`` that can be released now."""
        self._buffer += text
        content: list[str] = []
        reasoning: list[str] = []
        while self._buffer:
            tag = self.CLOSE if self._inside else self.OPEN
            pos = self._buffer.find(tag)
            if pos >= 0:
                (reasoning if self._inside else content).append(self._buffer[:pos])
                self._buffer = self._buffer[pos + len(tag):]
                self._inside = not self._inside
                continue
            keep = _partial_suffix(self._buffer, tag)
            release = self._buffer[: len(self._buffer) - keep]
            (reasoning if self._inside else content).append(release)
            self._buffer = self._buffer[len(release):]
            break
        return "".join(content), "".join(reasoning)

    def flush(self) -> tuple[str, str]:
        rest, self._buffer = self._buffer, ""
        return ("", rest) if self._inside else (rest, "")


def _partial_suffix(text: str, tag: str) -> int:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if tag.startswith(text[-size:]):
            return size
    return 0
