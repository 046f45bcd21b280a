"""Tests for provider request building, SDK stream mapping and resolution.

No network: SDK clients are replaced by in-memory fakes that hand back
the same objects the real clients stream.
"""
from __future__ import annotations

import base64
from contextlib import aclosing
from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import openai
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from google.api_core import exceptions as google_exceptions
from openai.types.chat import ChatCompletionChunk

from relaychain.engine.errors import ProviderError
from relaychain.engine.model_registry import build_model_registry, normalize_model_id
from relaychain.engine.models import ImageAttachment, TokenUsage
from relaychain.engine.providers import (
    AnthropicProvider,
    GeminiProvider,
    ImagePart,
    OpenAIProvider,
    ProviderRegistry,
    StreamRequest,
    XAIProvider,
)
from relaychain.engine.providers import gemini_provider
from relaychain.engine.providers.base import ThinkingTagSplitter, api_error, decode_data_url
from relaychain.engine.providers.gemini_provider import parse_gemini_chunk
from relaychain.engine.providers.openai_provider import parse_chat_chunk


class _FakeStream:
    """Stands in for an SDK AsyncStream; records whether it was closed."""

    def __init__(self, items):
        self._items = list(items)
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    async def __aiter__(self):
        for item in self._items:
            yield item


class _FakeEndpoint:
    """``create(**params)`` returning a stream or raising."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.params: list[dict] = []

    async def create(self, **params):
        self.params.append(params)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _openai_client(outcome):
    endpoint = _FakeEndpoint(outcome)
    client = SimpleNamespace(chat=SimpleNamespace(completions=endpoint), close=AsyncMock())
    return client, endpoint


def _anthropic_client(outcome):
    endpoint = _FakeEndpoint(outcome)
    return SimpleNamespace(messages=endpoint, close=AsyncMock()), endpoint


def _chat_chunk(content=None, reasoning=None, usage=None) -> ChatCompletionChunk:
    delta = {"role": "assistant"}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    data = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 1700000000,
        "model": "gpt-4o",
        "choices": [] if usage else [{"index": 0, "delta": delta, "finish_reason": None}],
    }
    if usage:
        prompt, completion = usage
        data["usage"] = {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        }
    return ChatCompletionChunk.model_validate(data)


def _status_error(cls, status: int, body):
    request = httpx.Request("POST", "https://api.test/v1/chat/completions")
    return cls(f"Error code: {status}", response=httpx.Response(status, request=request), body=body)


def _request(model: str = "gpt-4o", **kwargs) -> StreamRequest:
    return StreamRequest(model=model, messages=[{"role": "user", "content": "hi"}], **kwargs)


# ── Data URLs ──


def test_decode_data_url_base64():
    payload = base64.b64encode(b"\x89PNG").decode("ascii")
    assert decode_data_url(f"data:image/png;base64,{payload}") == ("image/png", payload)


def test_decode_data_url_plain_text_is_encoded():
    mime, payload = decode_data_url("data:,hello")
    assert mime == "image/jpeg"
    assert base64.b64decode(payload) == b"hello"


@pytest.mark.asyncio
async def test_inline_images_are_fetched_and_encoded():
    png = b"\x89PNG\r\n\x1a\nnot-really-a-png"

    async def image(request):
        return web.Response(body=png, content_type="image/png")

    app = web.Application()
    app.router.add_get("/cat.png", image)
    provider = AnthropicProvider()
    async with TestServer(app) as server:
        parts = await provider.prepare_images([
            ImageAttachment(url=str(server.make_url("/cat.png"))),
        ])
        with pytest.raises(ProviderError, match="HTTP 404"):
            await provider.prepare_images([ImageAttachment(url=str(server.make_url("/gone.png")))])
        await provider.shutdown()

    assert parts[0].mime_type == "image/png"
    assert base64.b64decode(parts[0].data) == png


@pytest.mark.asyncio
async def test_url_images_pass_through_when_not_inlined():
    parts = await OpenAIProvider().prepare_images([
        ImageAttachment(url="https://example.com/cat.png", mime_type="image/png"),
    ])
    assert parts == [ImagePart(url="https://example.com/cat.png", mime_type="image/png")]


# ── OpenAI chat chunks ──


def test_parse_chat_chunk_text_and_reasoning():
    delta = parse_chat_chunk(_chat_chunk(content="Hi", reasoning="think"))
    assert delta.text == "Hi"
    assert delta.reasoning == "think"
    assert delta.usage is None


def test_parse_chat_chunk_usage_only():
    delta = parse_chat_chunk(_chat_chunk(usage=(10, 5)))
    assert delta.text == ""
    assert delta.usage == TokenUsage(10, 5, 15)


def test_parse_chat_chunk_empty_role_chunk_is_dropped():
    assert parse_chat_chunk(_chat_chunk()) is None


@pytest.mark.asyncio
async def test_openai_stream_maps_sdk_chunks():
    stream = _FakeStream([
        _chat_chunk(content="Hel"),
        _chat_chunk(content="lo", reasoning="hmm"),
        _chat_chunk(usage=(3, 2)),
    ])
    client, endpoint = _openai_client(stream)
    provider = OpenAIProvider(client=client)

    deltas = [d async for d in provider.stream(_request())]

    assert [d.text for d in deltas] == ["Hel", "lo", ""]
    assert deltas[1].reasoning == "hmm"
    assert deltas[-1].usage == TokenUsage(3, 2, 5)
    assert endpoint.params[0]["stream"] is True
    assert stream.closed
    await provider.shutdown()
    client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_openai_stream_closes_response_when_consumer_leaves():
    stream = _FakeStream([_chat_chunk(content="a"), _chat_chunk(content="b")])
    client, _ = _openai_client(stream)
    provider = OpenAIProvider(client=client)

    async with aclosing(provider.stream(_request())) as deltas:
        async for _ in deltas:
            break

    assert stream.closed


@pytest.mark.asyncio
async def test_openai_status_error_becomes_provider_error():
    error = _status_error(openai.InternalServerError, 500, {"error": {"message": "overloaded"}})
    client, _ = _openai_client(error)
    provider = OpenAIProvider(client=client)

    with pytest.raises(ProviderError, match="openai API error 500: overloaded") as info:
        async for _ in provider.stream(_request()):
            pass
    assert info.value.upstream_status == 500


@pytest.mark.asyncio
async def test_xai_thinking_mode_splits_tags_from_sdk_text():
    client, endpoint = _openai_client(_FakeStream([
        _chat_chunk(content="<thinking>check the"),
        _chat_chunk(content=" date</thinking>Answer"),
    ]))
    provider = XAIProvider(client=client)

    deltas = [d async for d in provider.stream(_request("grok-beta", options={"thinking_mode": True}))]

    assert "".join(d.reasoning for d in deltas) == "check the date"
    assert "".join(d.text for d in deltas) == "Answer"
    assert endpoint.params[0]["messages"][0]["role"] == "system"


# ── Request parameters ──


def test_openai_params_standard_model():
    params = OpenAIProvider().build_params(StreamRequest(
        model="gpt-4o",
        messages=[{"role": "user", "content": "hello"}],
        max_tokens=100,
        temperature=0.3,
        system_prompt="be brief",
    ))
    assert params["messages"][0] == {"role": "system", "content": "be brief"}
    assert params["max_tokens"] == 100
    assert params["temperature"] == 0.3
    assert params["stream"] is True
    assert params["stream_options"] == {"include_usage": True}


def test_openai_params_reasoning_model_uses_completion_budget():
    params = OpenAIProvider().build_params(StreamRequest(
        model="o1-mini", messages=[{"role": "user", "content": "hi"}], max_tokens=500,
    ))
    assert params["max_completion_tokens"] == 500
    assert "max_tokens" not in params
    assert "temperature" not in params


def test_openai_params_images_become_content_parts():
    params = OpenAIProvider().build_params(StreamRequest(
        model="gpt-4o",
        messages=[{"role": "user", "content": "what is this"}],
        images=[
            ImagePart(url="https://example.com/cat.png"),
            ImagePart(url="cat.png", mime_type="image/png", data="QUJD"),
        ],
    ))
    content = params["messages"][-1]["content"]
    assert content[0] == {"type": "text", "text": "what is this"}
    assert content[1]["image_url"]["url"] == "https://example.com/cat.png"
    assert content[2]["image_url"]["url"] == "data:image/png;base64,QUJD"


def test_anthropic_params_thinking_budget_drops_temperature():
    params = AnthropicProvider().build_params(StreamRequest(
        model="claude-3-5-sonnet-20241022",
        messages=[{"role": "user", "content": "hi"}],
        max_tokens=1000,
        system_prompt="sys",
        options={"thinking_budget": 2048},
    ))
    assert params["system"] == "sys"
    assert params["thinking"] == {"type": "enabled", "budget_tokens": 2048}
    assert params["max_tokens"] == 2048 + 1024
    assert "temperature" not in params


def test_anthropic_params_images_are_base64_blocks():
    params = AnthropicProvider().build_params(StreamRequest(
        model="claude-3-5-sonnet-20241022",
        messages=[{"role": "user", "content": "describe"}],
        images=[ImagePart(url="x", mime_type="image/png", data="QUJD")],
    ))
    blocks = params["messages"][0]["content"]
    assert blocks[0]["source"] == {"type": "base64", "media_type": "image/png", "data": "QUJD"}
    assert blocks[-1] == {"type": "text", "text": "describe"}


def test_gemini_contents_map_roles_and_decode_images():
    contents = GeminiProvider().build_contents(StreamRequest(
        model="gemini-2.0-flash",
        messages=[
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a"},
            {"role": "user", "content": "q2"},
        ],
        images=[ImagePart(url="x", mime_type="image/png", data="QUJD")],
    ))
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[-1]["parts"][-1] == {"inline_data": {"mime_type": "image/png", "data": b"ABC"}}


# ── Anthropic events ──


def _event(type_, **fields):
    return SimpleNamespace(type=type_, **fields)


@pytest.mark.asyncio
async def test_anthropic_stream_maps_events():
    stream = _FakeStream([
        _event("message_start", message=SimpleNamespace(
            usage=SimpleNamespace(input_tokens=12, output_tokens=1),
        )),
        _event("content_block_start"),
        _event("content_block_delta", delta=SimpleNamespace(type="thinking_delta", thinking="Let me see.")),
        _event("content_block_delta", delta=SimpleNamespace(type="text_delta", text="Hi")),
        _event("content_block_stop"),
        _event("message_delta", usage=SimpleNamespace(output_tokens=5)),
        _event("message_stop"),
    ])
    client, endpoint = _anthropic_client(stream)
    provider = AnthropicProvider(client=client)

    deltas = [d async for d in provider.stream(_request(
        "claude-3-5-sonnet-20241022", options={"thinking_budget": 1024},
    ))]

    assert [(d.reasoning, d.text) for d in deltas[:2]] == [("Let me see.", ""), ("", "Hi")]
    assert deltas[-1].usage == TokenUsage(12, 5, 17)
    assert endpoint.params[0]["thinking"]["budget_tokens"] == 1024
    assert stream.closed


@pytest.mark.asyncio
async def test_anthropic_status_error_becomes_provider_error():
    error = _status_error(
        anthropic.RateLimitError, 429,
        {"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}},
    )
    client, _ = _anthropic_client(error)
    provider = AnthropicProvider(client=client)

    with pytest.raises(ProviderError, match="anthropic API error 429: slow down"):
        async for _ in provider.stream(_request("claude-3-5-haiku-20241022")):
            pass


# ── Gemini chunks ──


def _gemini_chunk(parts=(), usage=None):
    return SimpleNamespace(
        candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))],
        usage_metadata=SimpleNamespace(
            prompt_token_count=usage[0] if usage else 0,
            candidates_token_count=usage[1] if usage else 0,
            total_token_count=sum(usage) if usage else 0,
        ),
    )


def test_parse_gemini_chunk_separates_thoughts():
    delta = parse_gemini_chunk(_gemini_chunk([
        SimpleNamespace(text="plan", thought=True),
        SimpleNamespace(text="answer", thought=False),
    ]))
    assert (delta.reasoning, delta.text, delta.usage) == ("plan", "answer", None)
    assert parse_gemini_chunk(_gemini_chunk()) is None
    assert parse_gemini_chunk(_gemini_chunk(usage=(4, 6))).usage == TokenUsage(4, 6, 10)


class _FakeGenerativeModel:
    outcome = None
    calls: list = []

    def __init__(self, name, system_instruction=None):
        self.name = name
        self.system_instruction = system_instruction

    async def generate_content_async(self, contents, **kwargs):
        type(self).calls.append((self.name, self.system_instruction, contents, kwargs))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return _FakeStream(self.outcome)


@pytest.fixture
def fake_genai(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    monkeypatch.setattr(gemini_provider.genai, "configure", lambda **kwargs: None)
    monkeypatch.setattr(_FakeGenerativeModel, "calls", [])
    monkeypatch.setattr(gemini_provider.genai, "GenerativeModel", _FakeGenerativeModel)
    return _FakeGenerativeModel


@pytest.mark.asyncio
async def test_gemini_stream_uses_generative_model(fake_genai, monkeypatch):
    monkeypatch.setattr(fake_genai, "outcome", [
        _gemini_chunk([SimpleNamespace(text="Hello", thought=False)]),
        _gemini_chunk(usage=(7, 1)),
    ])
    provider = GeminiProvider()

    deltas = [d async for d in provider.stream(_request("google-gemini-2.0-flash", system_prompt="sys"))]

    assert [d.text for d in deltas] == ["Hello", ""]
    assert deltas[-1].usage == TokenUsage(7, 1, 8)
    name, system, contents, kwargs = fake_genai.calls[0]
    assert (name, system) == ("gemini-2.0-flash", "sys")
    assert contents == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert kwargs["stream"] is True
    assert kwargs["generation_config"].max_output_tokens == 4000


@pytest.mark.asyncio
async def test_gemini_api_error_becomes_provider_error(fake_genai, monkeypatch):
    monkeypatch.setattr(fake_genai, "outcome", google_exceptions.ResourceExhausted("quota exceeded"))
    provider = GeminiProvider()

    with pytest.raises(ProviderError, match="google API error 429: quota exceeded"):
        async for _ in provider.stream(_request("gemini-1.5-pro")):
            pass


def test_api_error_falls_back_to_sdk_message():
    assert str(api_error("openai", 502, "<html>", "Bad gateway")) == "openai API error 502: Bad gateway"
    assert str(api_error("xai", None, None, "Connection error.")) == "Connection error."


# ── xAI thinking tags ──


def test_thinking_tag_splitter_handles_split_tags():
    splitter = ThinkingTagSplitter()
    out = [
        splitter.feed("Hello <thi"),
        splitter.feed("nking>plan it</think"),
        splitter.feed("ing> answer"),
    ]
    content = "".join(c for c, _ in out)
    reasoning = "".join(r for _, r in out)
    rest = splitter.flush()
    assert content + rest[0] == "Hello  answer"
    assert reasoning + rest[1] == "plan it"


def test_thinking_tag_splitter_flush_inside_tag_is_reasoning():
    splitter = ThinkingTagSplitter()
    assert splitter.feed("<thinking>unfinished") == ("", "unfinished")
    assert splitter.flush() == ("", "")


def test_xai_system_prompt_options():
    provider = XAIProvider()
    prompt = provider._system_prompt(StreamRequest(
        model="grok-beta", messages=[],
        options={"real_time_data": True, "thinking_mode": True},
    ))
    assert "Today is" in prompt
    assert "<thinking>" in prompt
    assert provider._system_prompt(StreamRequest(model="grok-beta", messages=[])) is None


# ── Resolution ──


def test_providers_claim_their_families():
    assert OpenAIProvider().supports("openai-gpt-4o")
    assert OpenAIProvider().supports("o3-mini")
    assert not OpenAIProvider().supports("claude-3-opus-20240229")
    assert AnthropicProvider().supports("claude-3-opus-20240229")
    assert XAIProvider().supports("grok-2-1212")
    assert not XAIProvider().supports("gpt-4o")
    assert GeminiProvider().supports("google-gemini-1.5-pro")


def test_registry_resolve_prefers_capability_provider():
    registry = ProviderRegistry()
    registry.register("openai", OpenAIProvider())
    registry.register("xai", XAIProvider())
    models = build_model_registry()
    assert registry.resolve("grok-beta", models).name == "xai"
    assert registry.resolve("gpt-4o", models).name == "openai"


def test_registry_resolve_unknown_model_raises():
    registry = ProviderRegistry()
    registry.register("openai", OpenAIProvider())
    with pytest.raises(ProviderError, match="No provider supports model"):
        registry.resolve("llama-3")


def test_normalize_model_id_strips_legacy_prefix():
    assert normalize_model_id("OpenAI-GPT-4o") == "gpt-4o"
    assert normalize_model_id("anthropic-claude-3-opus-20240229") == "claude-3-opus-20240229"
    assert normalize_model_id("gpt-4o") == "gpt-4o"


def test_model_registry_extra_models():
    models = build_model_registry(
        {"my-llama": {"provider": "openai", "vision": True}}, extra_ids=["gpt-4o", "phi-4"],
    )
    assert models.supports_vision("my-llama")
    assert models.get("phi-4").provider == "auto"
    assert models.get("gpt-4o").provider == "openai"
    assert models.uses_completion_budget("o1")
    assert not models.uses_completion_budget("gpt-4o")


@pytest.mark.asyncio
async def test_missing_api_key_raises_provider_error(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    provider = OpenAIProvider()
    assert provider.is_available() is False
    with pytest.raises(ProviderError, match="OPENAI_API_KEY"):
        provider.api_key
    await provider.shutdown()
