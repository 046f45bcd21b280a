"""ThinkingManager tests: scripted phases, relayed traces, preemption."""
from __future__ import annotations

import asyncio

import pytest

from relaychain.engine.models import Chunk, ChunkKind, ModelType
from relaychain.engine.persistence_queue import PersistenceQueue
from relaychain.engine.scheduler import ManualScheduler
from relaychain.engine.thinking import (
    FINAL_TEXT,
    ThinkingManager,
    build_phases,
    chunk_thinking_content,
)


async def _new_step(store) -> str:
    session_id = await store.create_session("thinking")
    return await store.create_step(session_id, 0, "gpt-4o", "p")


def _manager(step_id, store, scheduler, *, provider="openai", model="gpt-4o", simulate=True):
    queue = PersistenceQueue.for_store(store, scheduler=scheduler)
    manager = ThinkingManager(
        step_id, provider=provider, model=model, queue=queue, store=store,
        scheduler=scheduler, simulate=simulate,
    )
    return manager, queue


async def _source(*chunks: Chunk, gate: asyncio.Event | None = None):
    if gate is not None:
        await gate.wait()
    for chunk in chunks:
        yield chunk


# ── Phase tables ──


def test_build_phases_appends_provider_family():
    phases = build_phases("anthropic")
    assert len(phases) == 12
    assert phases[0].content == "Analyzing the problem statement..."
    assert phases[-1].content == "Ensuring helpful, harmless approach..."
    assert [p.duration_ms for p in phases[8:]] == [10, 8, 6, 4]


def test_build_phases_unknown_provider_uses_default_tail():
    phases = build_phases("default")
    assert len(phases) == 11
    assert phases[-1].content == "Finalizing output..."


def test_model_type_detection(store, scheduler):
    manager, _ = _manager("s", store, scheduler, model="o1-mini")
    assert manager.state.model_type == ModelType.REASONING
    manager, _ = _manager("s", store, scheduler, model="gpt-4o")
    assert manager.state.model_type == ModelType.STANDARD


# ── Chunker ──


def test_chunk_thinking_content_merges_up_to_limit():
    assert chunk_thinking_content("A. B. C.", max_chars=4) == ["A. B.", "C."]


def test_chunk_thinking_content_adds_terminal_punctuation():
    assert chunk_thinking_content("First idea! Second idea") == ["First idea. Second idea."]
    assert chunk_thinking_content("   ") == []


def test_chunk_thinking_content_long_text():
    text = " ".join(f"Sentence number {i} is here." for i in range(40))
    pieces = chunk_thinking_content(text)
    assert len(pieces) > 1
    assert all(len(p) <= 201 for p in pieces)
    assert all(p.endswith(".") for p in pieces)


# ── Scripted phases ──


@pytest.mark.asyncio
async def test_phases_play_to_completion(store):
    scheduler = ManualScheduler(auto_advance=True)
    step_id = await _new_step(store)
    manager, queue = _manager(step_id, store, scheduler)
    chunks = [c async for c in manager.phases()]

    assert len(chunks) == 13
    assert all(c.kind == ChunkKind.THINKING for c in chunks)
    assert all(c.is_thinking for c in chunks[:-1])
    assert chunks[-1].is_thinking is False
    assert chunks[-1].thinking.endswith(FINAL_TEXT)
    assert scheduler.slept[:3] == [0.015, 0.012, 0.01]

    await manager.cleanup()
    step = await store.get_step(step_id)
    assert step.is_thinking is False
    assert step.thinking.endswith(FINAL_TEXT)


@pytest.mark.asyncio
async def test_first_content_preempts_remaining_phases(store):
    scheduler = ManualScheduler()
    step_id = await _new_step(store)
    manager, queue = _manager(step_id, store, scheduler)
    gate = asyncio.Event()
    source = _source(Chunk.text("Hi"), Chunk.done("Hi", None), gate=gate)

    chunks: list[Chunk] = []

    async def consume():
        async for chunk in manager.run(source):
            chunks.append(chunk)

    task = asyncio.create_task(consume())
    await scheduler.settle()
    assert len(chunks) == 1

    await scheduler.advance(0.015)
    assert len(chunks) == 2
    assert chunks[-1].thinking.endswith("Breaking down the requirements...")

    gate.set()
    await task

    kinds = [c.kind for c in chunks]
    assert kinds == [
        ChunkKind.THINKING, ChunkKind.THINKING, ChunkKind.THINKING,
        ChunkKind.CONTENT, ChunkKind.COMPLETE,
    ]
    closing = chunks[2]
    assert closing.is_thinking is False
    assert "Considering different approaches" not in closing.thinking
    assert manager._phase_timer is None

    # Advancing past the old phase deadline adds nothing.
    await scheduler.advance(1.0)
    assert len(chunks) == 5
    await manager.cleanup()
    await queue.close()
    step = await store.get_step(step_id)
    assert step.is_thinking is False
    assert step.thinking == closing.thinking


@pytest.mark.asyncio
async def test_genuine_trace_is_relayed_in_sentences(store, scheduler):
    step_id = await _new_step(store)
    manager, queue = _manager(step_id, store, scheduler, simulate=False)
    source = _source(
        Chunk.reasoning("First idea. Second"),
        Chunk.reasoning(" idea! tail"),
        Chunk.text("A"),
        Chunk.done("A", None),
    )
    chunks = [c async for c in manager.run(source)]

    thinking = [c for c in chunks if c.kind == ChunkKind.THINKING]
    assert [c.thinking for c in thinking[:3]] == [
        "First idea.",
        "First idea.\nSecond idea.",
        "First idea.\nSecond idea.\ntail.",
    ]
    assert thinking[-1].is_thinking is False
    assert thinking[-1].thinking == "First idea.\nSecond idea.\ntail."
    assert chunks[-2].kind == ChunkKind.CONTENT
    assert chunks[-1].kind == ChunkKind.COMPLETE
    await manager.cleanup()


@pytest.mark.asyncio
async def test_late_trace_replaces_finished_phases(store):
    scheduler = ManualScheduler()
    step_id = await _new_step(store)
    manager, queue = _manager(step_id, store, scheduler, provider="anthropic")
    gate = asyncio.Event()
    source = _source(
        Chunk.reasoning("Real step one. Real step two."),
        Chunk.text("Answer"),
        Chunk.done("Answer", None),
        gate=gate,
    )

    chunks: list[Chunk] = []

    async def consume():
        async for chunk in manager.run(source):
            chunks.append(chunk)

    task = asyncio.create_task(consume())
    await scheduler.settle()
    await scheduler.advance(1.0)
    assert chunks[-1].is_thinking is False
    assert chunks[-1].thinking.endswith(FINAL_TEXT)
    scripted = len(chunks)

    gate.set()
    await task

    relayed = [c for c in chunks[scripted:] if c.kind == ChunkKind.THINKING]
    assert [c.thinking for c in relayed] == [
        "Real step one. Real step two.",
        "Real step one. Real step two.",
    ]
    assert relayed[0].is_thinking is True
    assert relayed[-1].is_thinking is False
    assert [c.kind for c in chunks[-2:]] == [ChunkKind.CONTENT, ChunkKind.COMPLETE]

    await manager.cleanup()
    await queue.close()
    step = await store.get_step(step_id)
    assert step.thinking == "Real step one. Real step two."
    assert "Analyzing the problem statement" not in step.thinking
    assert FINAL_TEXT not in step.thinking
    assert step.is_thinking is False


@pytest.mark.asyncio
async def test_no_simulation_and_no_trace_passes_chunks_through(store, scheduler):
    step_id = await _new_step(store)
    manager, _ = _manager(step_id, store, scheduler, simulate=False)
    chunks = [c async for c in manager.run(_source(Chunk.text("x"), Chunk.done("x", None)))]
    assert [c.kind for c in chunks] == [ChunkKind.CONTENT, ChunkKind.COMPLETE]
    await manager.cleanup()


@pytest.mark.asyncio
async def test_error_chunk_ends_run(store, scheduler):
    step_id = await _new_step(store)
    manager, _ = _manager(step_id, store, scheduler, simulate=False)
    chunks = [c async for c in manager.run(_source(
        Chunk.failure("bad"), Chunk.text("never"),
    ))]
    assert [c.kind for c in chunks] == [ChunkKind.ERROR]
    await manager.cleanup()


@pytest.mark.asyncio
async def test_complete_thinking_persists_final_text(store, scheduler):
    step_id = await _new_step(store)
    manager, _ = _manager(step_id, store, scheduler, simulate=False)
    await manager.complete_thinking("final trace")
    step = await store.get_step(step_id)
    assert step.thinking == "final trace"
    assert step.is_thinking is False
    assert manager.is_thinking is False


@pytest.mark.asyncio
async def test_cleanup_twice_writes_once(store, scheduler):
    step_id = await _new_step(store)
    writes: list[str] = []
    original = store.update_step

    async def counting(sid, fields):
        writes.append(sid)
        await original(sid, fields)

    store.update_step = counting
    manager, _ = _manager(step_id, store, scheduler)
    manager.start()
    await manager.cleanup()
    first = len(writes)
    await manager.cleanup()
    assert first == 1
    assert len(writes) == first


@pytest.mark.asyncio
async def test_update_stream_content_writes_through(store, scheduler):
    step_id = await _new_step(store)
    manager, _ = _manager(step_id, store, scheduler, simulate=False)
    manager.update_stream_content("partial text")
    await manager.cleanup()
    step = await store.get_step(step_id)
    assert step.streamed_content == "partial text"
