"""Sinks: where an execution pushes its events.

The engine never knows whether events go to an HTTP response, a queue
or a terminal. It calls ``push()`` per event, then ``close()`` on success
or ``fail()`` when the stream must end with an error.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from relaychain.adapters.events import ErrorEvent, StreamEvent

logger = logging.getLogger(__name__)


class SinkClosed(Exception):
    """The consumer went away; producers must stop."""


class Sink(abc.ABC):
    @abc.abstractmethod
    async def push(self, event: StreamEvent) -> None:
        """Deliver one event. Raises SinkClosed if nobody is listening."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Signal normal end of stream."""

    async def fail(self, message: str) -> None:
        """Deliver an error event, then close."""
        try:
            await self.push(ErrorEvent(error=message))
        finally:
            await self.close()


_CLOSED = object()


class QueueSink(Sink):
    """Async queue between a producer task and a consumer loop."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def push(self, event: StreamEvent) -> None:
        if self._closed:
            raise SinkClosed("queue sink closed")
        try:
            # Backpressure instead of dropping when the consumer stalls.
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "QueueSink blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type, self._queue.qsize(),
            )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events until the sink is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class CallbackSink(Sink):
    """Forwards each event to an async callback."""

    def __init__(self, callback: Callable[[StreamEvent], Awaitable[None]]) -> None:
        self._callback = callback
        self.closed = False

    async def push(self, event: StreamEvent) -> None:
        if self.closed:
            raise SinkClosed("callback sink closed")
        await self._callback(event)

    async def close(self) -> None:
        self.closed = True


class CollectingSink(Sink):
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []
        self.closed = False

    async def push(self, event: StreamEvent) -> None:
        if self.closed:
            raise SinkClosed("collecting sink closed")
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, event_type: str) -> list[StreamEvent]:
        return [e for e in self.events if e.event_type == event_type]
