"""ThinkingManager: the "thinking" trace shown while a model works.

Per execution the manager moves through

    Idle -> Thinking (phase 0..N-1) -> Responding -> Complete

When the provider emits a genuine reasoning trace, that trace is relayed
in sentence-sized pieces. Otherwise a scripted sequence of phases is
played while waiting for the first token. The first content chunk always
wins: remaining phases are dropped and the pending phase timer cancelled.

Thinking status writes go through the PersistenceQueue. Streamed content
is written immediately through a StreamedContentWriter. Neither ever
blocks the chunks flowing to the client.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, AsyncIterator

from .model_registry import is_reasoning_model
from .models import Chunk, ChunkKind, ModelType, ThinkingPhase, ThinkingState
from .persistence_queue import PersistenceQueue, StreamedContentWriter
from .scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)

START_TEXT = "Starting to analyze the problem..."
FINAL_TEXT = "Now generating response..."
MAX_PIECE_CHARS = 200

# (id, text, duration ms)
_BASE_PHASES: tuple[tuple[str, str, int], ...] = (
    ("analyze", "Analyzing the problem statement...", 15),
    ("breakdown", "Breaking down the requirements...", 12),
    ("approaches", "Considering different approaches...", 10),
    ("evaluate", "Evaluating potential solutions...", 8),
    ("logic", "Working through the logic step by step...", 10),
    ("edge_cases", "Checking for edge cases and constraints...", 8),
    ("refine", "Refining the approach...", 6),
    ("finalize", "Finalizing the solution strategy...", 5),
)

_PROVIDER_DURATIONS = (10, 8, 6, 4)

_PROVIDER_PHASES: dict[str, tuple[str, ...]] = {
    "openai": (
        "Analyzing with GPT's strategic reasoning...",
        "Structuring data-driven insights...",
        "Optimizing for clarity and impact...",
        "Finalizing strategic recommendations...",
    ),
    "anthropic": (
        "Applying Constitutional AI principles...",
        "Considering multiple ethical perspectives...",
        "Crafting nuanced, balanced response...",
        "Ensuring helpful, harmless approach...",
    ),
    "xai": (
        "Accessing real-time data streams...",
        "Cross-referencing current context...",
        "Integrating latest market insights...",
        "Delivering cutting-edge analysis...",
    ),
    "google": (
        "Leveraging Google's knowledge graph...",
        "Analyzing with multimodal intelligence...",
        "Synthesizing comprehensive insights...",
        "Optimizing response with Gemini's capabilities...",
    ),
}

_DEFAULT_PHASES: tuple[tuple[str, int], ...] = (
    ("Processing your request...", 12),
    ("Generating intelligent response...", 8),
    ("Finalizing output...", 6),
)

_SENTENCE_END = re.compile(r"[.!?]+")


def build_phases(provider: str) -> list[ThinkingPhase]:
    """Base phases followed by the provider family's phases."""
    phases = [
        ThinkingPhase(phase_id=pid, content=text, duration_ms=ms)
        for pid, text, ms in _BASE_PHASES
    ]
    specific = _PROVIDER_PHASES.get(provider)
    if specific is not None:
        phases.extend(
            ThinkingPhase(phase_id=f"{provider}_{i}", content=text, duration_ms=ms)
            for i, (text, ms) in enumerate(zip(specific, _PROVIDER_DURATIONS))
        )
    else:
        phases.extend(
            ThinkingPhase(phase_id=f"default_{i}", content=text, duration_ms=ms)
            for i, (text, ms) in enumerate(_DEFAULT_PHASES)
        )
    return phases


def chunk_thinking_content(text: str, max_chars: int = MAX_PIECE_CHARS) -> list[str]:
    """Split a reasoning trace into sentence-aligned pieces.

    Sentences are merged until adding the next one would pass
    ``max_chars``; every piece ends with terminal punctuation.
    """
    sentences = [s.strip() for s in _SENTENCE_END.split(text) if s.strip()]
    pieces: list[str] = []
    current = ""
    for sentence in sentences:
        candidate = f"{current}. {sentence}" if current else sentence
        if current and len(candidate) > max_chars:
            pieces.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        pieces.append(current)
    return [p if p.endswith((".", "!", "?")) else p + "." for p in pieces]


class ThinkingManager:
    """Owns the ThinkingState of one step execution."""

    def __init__(
        self,
        step_id: str,
        *,
        provider: str,
        model: str,
        queue: PersistenceQueue,
        store: Any,
        scheduler: Scheduler | None = None,
        simulate: bool = True,
    ) -> None:
        self.step_id = step_id
        self._queue = queue
        self._scheduler = scheduler or AsyncioScheduler()
        self._simulate = simulate
        self._content_writer = StreamedContentWriter(store, step_id)
        self.state = ThinkingState(
            provider=provider,
            model_type=(
                ModelType.REASONING if is_reasoning_model(model) else ModelType.STANDARD
            ),
        )
        self._phase_timer: asyncio.Task | None = None
        self._thinking_closed = False
        self._cleaned_up = False
        self._relay_buffer = ""
        self._relaying = False
        self._content_started = False

    # ── Lifecycle ──

    def start(self) -> None:
        self.state.phases = build_phases(self.state.provider)
        self.state.current_phase = 0
        self.state.is_active = True
        self.state.start_time = self._scheduler.now()
        self.state.full_content = ""
        self._queue.enqueue(
            "start_thinking",
            {"thinking": START_TEXT, "is_thinking": True},
            self.step_id,
        )
        logger.debug(
            "Thinking started step=%s provider=%s type=%s phases=%d",
            self.step_id, self.state.provider, self.state.model_type.value,
            len(self.state.phases),
        )

    @property
    def is_thinking(self) -> bool:
        return self.state.is_active and not self._thinking_closed

    def _append(self, text: str) -> Chunk:
        if self.state.full_content:
            self.state.full_content += "\n" + text
        else:
            self.state.full_content = text
        # Trace text that arrives after content started is still recorded
        # but no longer flagged as in progress.
        active = not self._thinking_closed
        self._queue.enqueue(
            "thinking" if active else "thinking_complete",
            {"thinking": self.state.full_content, "is_thinking": active},
            self.step_id,
        )
        return Chunk.reasoning(self.state.full_content, is_thinking=active)

    def _close_thinking(self) -> Chunk | None:
        """Mark thinking finished; returns the closing chunk once."""
        if self._thinking_closed:
            return None
        self._thinking_closed = True
        self.state.is_active = False
        self._queue.enqueue(
            "thinking_complete",
            {"thinking": self.state.full_content, "is_thinking": False},
            self.step_id,
        )
        return Chunk.reasoning(self.state.full_content, is_thinking=False)

    # ── Scripted phases ──

    async def phases(self) -> AsyncIterator[Chunk]:
        """Play every scripted phase, then the closing line."""
        if not self.state.phases:
            self.start()
        while self.state.is_active and self.state.current_phase < len(self.state.phases):
            phase = self.state.phases[self.state.current_phase]
            phase.timestamp = self._scheduler.now()
            yield self._append(phase.content)
            await self._scheduler.sleep(phase.duration_ms / 1000)
            self.state.current_phase += 1
        if self.state.is_active:
            self._append(FINAL_TEXT)
            closing = self._close_thinking()
            if closing is not None:
                yield closing

    # ── Driving one execution ──

    async def run(self, source: AsyncIterator[Chunk]) -> AsyncIterator[Chunk]:
        """Interleave thinking with the adapter's chunks.

        Yields thinking chunks (scripted or relayed) followed by the
        provider's content and terminal chunks, in order.
        """
        iterator = source.__aiter__()
        pending: asyncio.Future | None = asyncio.ensure_future(iterator.__anext__())
        try:
            if self._simulate:
                self.start()
                async for chunk in self._race_phases(pending):
                    yield chunk

            while pending is not None:
                try:
                    chunk = await pending
                except StopAsyncIteration:
                    pending = None
                    break
                pending = None
                for out in self._handle(chunk):
                    yield out
                if chunk.kind in (ChunkKind.COMPLETE, ChunkKind.ERROR):
                    break
                pending = asyncio.ensure_future(iterator.__anext__())
        finally:
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.wait({pending})
            self._cancel_phase_timer()
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                # Stops the upstream request when the consumer goes away.
                await aclose()

    async def _race_phases(self, pending: asyncio.Future) -> AsyncIterator[Chunk]:
        while self.state.current_phase < len(self.state.phases):
            phase = self.state.phases[self.state.current_phase]
            phase.timestamp = self._scheduler.now()
            yield self._append(phase.content)
            self._phase_timer = asyncio.ensure_future(
                self._scheduler.sleep(phase.duration_ms / 1000)
            )
            await asyncio.wait(
                {pending, self._phase_timer}, return_when=asyncio.FIRST_COMPLETED,
            )
            if pending.done():
                # Real output arrived; drop the remaining phases.
                self._cancel_phase_timer()
                logger.debug(
                    "Thinking preempted step=%s at phase=%d",
                    self.step_id, self.state.current_phase,
                )
                return
            self._phase_timer = None
            self.state.current_phase += 1
        self._append(FINAL_TEXT)
        closing = self._close_thinking()
        if closing is not None:
            yield closing

    def _handle(self, chunk: Chunk) -> list[Chunk]:
        out: list[Chunk] = []
        if chunk.kind == ChunkKind.THINKING:
            out.extend(self._relay(chunk.thinking or ""))
            return out

        # Content or terminal: thinking is over.
        if chunk.kind == ChunkKind.CONTENT:
            self._content_started = True
        out.extend(self._flush_relay())
        if self.state.is_active or self._relaying:
            closing = self._close_thinking()
            if closing is not None:
                out.append(closing)
        out.append(chunk)
        return out

    def _relay(self, text: str) -> list[Chunk]:
        if not self._relaying:
            self._relaying = True
            if not self._content_started:
                # The real trace replaces whatever phases were shown,
                # including a scripted close.
                self._thinking_closed = False
                self.state.is_active = True
                self.state.full_content = ""
        self._relay_buffer += text
        last_end = None
        for match in _SENTENCE_END.finditer(self._relay_buffer):
            last_end = match.end()
        if last_end is None:
            return []
        ready, self._relay_buffer = self._relay_buffer[:last_end], self._relay_buffer[last_end:]
        return [
            self._append(piece)
            for piece in chunk_thinking_content(ready)
        ]

    def _flush_relay(self) -> list[Chunk]:
        if not self._relay_buffer.strip():
            self._relay_buffer = ""
            return []
        rest, self._relay_buffer = self._relay_buffer, ""
        return [self._append(p) for p in chunk_thinking_content(rest)]

    # ── Public helpers ──

    chunk_thinking_content = staticmethod(chunk_thinking_content)

    def update_stream_content(self, text: str) -> None:
        """Write streamed content now, bypassing the batch queue."""
        self._content_writer.update(text)

    async def complete_thinking(self, final_text: str | None = None) -> None:
        """Force thinking off, persist the final text and flush once."""
        self._cancel_phase_timer()
        if final_text is not None:
            self.state.full_content = final_text
        if not self._thinking_closed and self.state.full_content:
            self._close_thinking()
        elif final_text is not None:
            self._queue.enqueue(
                "thinking_complete",
                {"thinking": final_text, "is_thinking": False},
                self.step_id,
            )
        self._thinking_closed = True
        self.state.is_active = False
        await self._queue.flush()

    def _cancel_phase_timer(self) -> None:
        if self._phase_timer is not None and not self._phase_timer.done():
            self._phase_timer.cancel()
        self._phase_timer = None

    async def cleanup(self) -> None:
        """Cancel timers and flush pending writes. Idempotent."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self.state.is_active = False
        self._cancel_phase_timer()
        await self._content_writer.wait()
        await self._queue.flush()
        logger.debug("Thinking cleaned up step=%s", self.step_id)
