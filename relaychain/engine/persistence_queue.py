"""Write-behind persistence for streaming state.

The live stream never waits on the document store. Status and thinking
updates are enqueued here and drained in the background in small
batches; streamed content goes through ``StreamedContentWriter`` which
writes immediately but never blocks the caller.

One queue belongs to one request handler. Nothing here is module-global.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import PersistenceError
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

Writer = Callable[[str, dict[str, Any]], Awaitable[Any]]

_seq = itertools.count()


@dataclass
class PendingWrite:
    kind: str
    payload: dict[str, Any]
    step_id: str
    timestamp: float = 0.0
    seq: int = field(default_factory=lambda: next(_seq))

    @property
    def key(self) -> tuple[str, str]:
        return (self.step_id, self.kind)


def store_writers(store: Any) -> dict[str, Writer]:
    """Map write kinds onto StepStore calls."""

    async def _turn(turn_id: str, payload: dict[str, Any]) -> None:
        await store.update_supervisor_turn(turn_id, payload)

    async def _content(step_id: str, payload: dict[str, Any]) -> None:
        await store.update_streamed_content(step_id, payload["content"])

    step_writer: Writer = store.update_step
    return {
        "start_thinking": step_writer,
        "thinking": step_writer,
        "thinking_complete": step_writer,
        "status": step_writer,
        "complete": step_writer,
        "content": _content,
        "turn": _turn,
    }


class PersistenceQueue:
    """Batched, collapsing, fire-and-forget durable writes."""

    def __init__(
        self,
        writers: Mapping[str, Writer],
        *,
        batch_size: int = 10,
        batch_interval: float = 0.05,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._writers = dict(writers)
        self._batch_size = max(1, batch_size)
        self._batch_interval = batch_interval
        self._scheduler = scheduler or AsyncioScheduler()
        self._pending: list[PendingWrite] = []
        self._timer: TimerHandle | None = None
        self._drain_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._closed = False
        self.failures = 0

    @classmethod
    def for_store(cls, store: Any, **kwargs: Any) -> PersistenceQueue:
        return cls(store_writers(store), **kwargs)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, kind: str, payload: dict[str, Any], step_id: str) -> None:
        """Record a write and schedule a drain. Never awaits."""
        if self._closed:
            logger.warning(
                "PersistenceQueue closed, dropping write kind=%s step=%s",
                kind, step_id,
            )
            return
        self._pending.append(PendingWrite(
            kind=kind, payload=dict(payload), step_id=step_id,
            timestamp=self._scheduler.now(),
        ))
        if len(self._pending) >= self._batch_size:
            self._cancel_timer()
            self._start_drain()
        elif self._timer is None:
            self._timer = self._scheduler.call_later(
                self._batch_interval, self._on_timer,
            )

    def _on_timer(self) -> None:
        self._timer = None
        self._start_drain()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_drain(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            # The running drain loops until the list is empty.
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        async with self._lock:
            while self._pending:
                await self._drain_batch()

    def _take_batch(self) -> list[PendingWrite]:
        # An entry with a newer pending entry for the same key would be
        # discarded by the collapse anyway; drop it before slicing.
        latest: dict[tuple[str, str], int] = {}
        for position, write in enumerate(self._pending):
            latest[write.key] = position
        live = [w for i, w in enumerate(self._pending) if latest[w.key] == i]
        batch = live[: self._batch_size]
        self._pending = live[self._batch_size:]
        return batch

    async def _drain_batch(self) -> None:
        batch = self._take_batch()
        collapsed: dict[tuple[str, str], PendingWrite] = {}
        for write in batch:
            collapsed[write.key] = write
        writes = sorted(collapsed.values(), key=lambda w: w.seq)
        results = await asyncio.gather(
            *(self._write(w) for w in writes), return_exceptions=True,
        )
        for write, result in zip(writes, results):
            if isinstance(result, BaseException):
                self.failures += 1
                error = PersistenceError(write.step_id, write.kind, str(result))
                logger.warning("%s", error)

    async def _write(self, write: PendingWrite) -> None:
        writer = self._writers.get(write.kind)
        if writer is None:
            raise KeyError(f"no writer registered for kind {write.kind!r}")
        await writer(write.step_id, write.payload)

    async def flush(self) -> None:
        """Drain everything pending and wait for it."""
        self._cancel_timer()
        await self._drain()

    async def close(self) -> None:
        """Cancel timers and flush. Safe to call twice."""
        if self._closed:
            return
        await self.flush()
        self._closed = True
        logger.debug("PersistenceQueue closed failures=%d", self.failures)


class StreamedContentWriter:
    """Immediate, unbatched ``update_streamed_content`` writes.

    ``update()`` returns at once. A single background task writes the
    newest text; texts superseded while a write is in flight are skipped,
    so the stored content never goes backwards.
    """

    def __init__(self, store: Any, step_id: str) -> None:
        self._store = store
        self._step_id = step_id
        self._latest: str | None = None
        self._task: asyncio.Task | None = None

    def update(self, text: str) -> None:
        self._latest = text
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while self._latest is not None:
            text, self._latest = self._latest, None
            try:
                await self._store.update_streamed_content(self._step_id, text)
            except Exception as exc:
                logger.warning(
                    "update_streamed_content failed step=%s: %s",
                    self._step_id, exc,
                )

    async def wait(self) -> None:
        """Wait for the in-flight write, if any."""
        if self._task is not None:
            await self._task
