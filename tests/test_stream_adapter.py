"""StreamAdapter tests: canonical chunk sequence over a scripted provider."""
from __future__ import annotations

import aiohttp
import pytest

from relaychain.engine.errors import ProviderError
from relaychain.engine.models import ChunkKind, ImageAttachment, TokenUsage
from relaychain.engine.providers import ProviderDelta, ProviderRegistry
from relaychain.engine.stream_adapter import StreamAdapter, StreamOptions, augment_prompt


async def _collect(adapter, model="gpt-4o", prompt="hi", **kwargs):
    return [chunk async for chunk in adapter.stream(model, prompt, **kwargs)]


@pytest.mark.asyncio
async def test_deltas_concatenate_to_terminal_content(scripted):
    adapter, _ = scripted({"gpt-4o": [
        ProviderDelta(text="Hel"),
        ProviderDelta(text="lo"),
        ProviderDelta(usage=TokenUsage(4, 2, 6)),
    ]})
    chunks = await _collect(adapter)
    assert [c.kind for c in chunks] == [ChunkKind.CONTENT, ChunkKind.CONTENT, ChunkKind.COMPLETE]
    assert "".join(c.content for c in chunks[:-1]) == chunks[-1].content == "Hello"
    assert chunks[-1].token_usage == TokenUsage(4, 2, 6)


@pytest.mark.asyncio
async def test_missing_usage_reports_zero(scripted):
    adapter, _ = scripted(default=[ProviderDelta(text="x")])
    chunks = await _collect(adapter)
    assert chunks[-1].token_usage == TokenUsage()


@pytest.mark.asyncio
async def test_reasoning_is_relayed_as_thinking_chunk(scripted):
    adapter, _ = scripted(default=[
        ProviderDelta(reasoning="step one"),
        ProviderDelta(text="answer"),
    ])
    chunks = await _collect(adapter, model="o1-mini")
    assert chunks[0].kind == ChunkKind.THINKING
    assert chunks[0].thinking == "step one"
    assert chunks[-1].content == "answer"


@pytest.mark.asyncio
async def test_provider_error_midstream_ends_with_single_error_chunk(scripted):
    adapter, _ = scripted(default=[
        ProviderDelta(text="par"),
        ProviderError("openai", "openai API error 500: overloaded", status=500),
    ])
    chunks = await _collect(adapter)
    assert [c.kind for c in chunks] == [ChunkKind.CONTENT, ChunkKind.ERROR]
    assert chunks[-1].content == "openai API error 500: overloaded"


@pytest.mark.asyncio
async def test_transport_error_becomes_error_chunk(scripted):
    adapter, _ = scripted(default=[aiohttp.ClientConnectionError()])
    chunks = await _collect(adapter)
    assert len(chunks) == 1
    assert chunks[0].is_error
    assert chunks[0].content == "ClientConnectionError"


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_error_chunk(scripted):
    adapter, _ = scripted(default=[RuntimeError("kaput")])
    chunks = await _collect(adapter)
    assert chunks[-1].is_error and chunks[-1].content == "kaput"


@pytest.mark.asyncio
async def test_no_provider_yields_error_chunk():
    adapter = StreamAdapter(ProviderRegistry())
    chunks = await _collect(adapter, model="mystery-model")
    assert len(chunks) == 1
    assert "No provider supports model" in chunks[0].content
    assert adapter.provider_name("mystery-model") == "default"


@pytest.mark.asyncio
async def test_request_shape(scripted):
    adapter, provider = scripted()
    await _collect(
        adapter,
        model="openai-GPT-4o",
        prompt="question",
        options=StreamOptions(
            history=[{"role": "assistant", "content": "earlier"}],
            system_prompt="sys",
            audio_transcription="spoken words",
            max_tokens=123,
        ),
    )
    request = provider.requests[0]
    assert request.model == "gpt-4o"
    assert request.system_prompt == "sys"
    assert request.max_tokens == 123
    assert request.messages[0] == {"role": "assistant", "content": "earlier"}
    assert request.messages[-1]["content"] == "question\n\nAudio transcription:\nspoken words"


@pytest.mark.asyncio
async def test_data_url_images_are_prepared(scripted):
    adapter, provider = scripted()
    await _collect(adapter, attachments=[ImageAttachment(url="data:image/png;base64,QUJD")])
    image = provider.requests[0].images[0]
    assert image.mime_type == "image/png"
    assert image.data == "QUJD"


def test_augment_prompt_web_results():
    augmented = augment_prompt("find it", StreamOptions(web_search_results=[
        {"title": "Doc", "url": "https://d.example", "snippet": "body"},
        "plain result",
    ]))
    assert augmented == (
        "find it\n\nWeb search results:\n"
        "[1] Doc (https://d.example)\nbody\n\n[2] plain result"
    )


def test_augment_prompt_ignores_blank_sections():
    assert augment_prompt("p", StreamOptions(audio_transcription="   ")) == "p"
    assert augment_prompt("p", None) == "p"


def test_provider_options_are_routed_by_family():
    options = StreamOptions(grok_options={"thinking_mode": True}, claude_options={"thinking_budget": 1})
    assert options.provider_options("xai") == {"thinking_mode": True}
    assert options.provider_options("anthropic") == {"thinking_budget": 1}
    assert options.provider_options("openai") == {}
