"""Server-Sent Events framing and the HTTP response sink."""
from __future__ import annotations

import asyncio
import json
import logging

from aiohttp import web

from relaychain.adapters.events import StreamEvent, event_to_dict
from relaychain.adapters.sink import Sink, SinkClosed

logger = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: StreamEvent) -> bytes:
    return f"data: {json.dumps(event_to_dict(event))}\n\n".encode()


class SSEResponseSink(Sink):
    """Writes each event to an open StreamResponse as soon as it is pushed.

    Writes are serialised so parallel steps sharing one response never
    interleave frames. A failed write means the client went away: the
    sink closes itself and raises SinkClosed to stop the producer.
    """

    def __init__(self, response: web.StreamResponse, req_id: str = "") -> None:
        self._response = response
        self._req_id = req_id
        self._lock = asyncio.Lock()
        self.closed = False
        self.disconnected = False
        self.events_sent = 0

    async def push(self, event: StreamEvent) -> None:
        if self.closed:
            raise SinkClosed("client disconnected" if self.disconnected else "stream closed")
        async with self._lock:
            try:
                await self._response.write(encode_event(event))
            except ConnectionResetError as exc:
                self.closed = True
                self.disconnected = True
                logger.info(
                    "SSE client disconnected req=%s after=%d events", self._req_id, self.events_sent,
                )
                raise SinkClosed("client disconnected") from exc
            self.events_sent += 1

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        async with self._lock:
            try:
                await self._response.write(DONE_FRAME)
                await self._response.write_eof()
            except ConnectionResetError:
                self.disconnected = True
                logger.debug("SSE close after disconnect req=%s", self._req_id)
