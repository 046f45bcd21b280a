"""Adapters package - events and sinks between the engine and its frontends.

The engine pushes typed events into a Sink; the HTTP server, the CLI and
tests each provide their own Sink.
"""
from __future__ import annotations

__all__ = [
    "StreamEvent",
    "event_to_dict",
    "dict_to_event",
    "Sink",
    "SinkClosed",
    "QueueSink",
    "CallbackSink",
    "CollectingSink",
]

from relaychain.adapters.events import StreamEvent, dict_to_event, event_to_dict
from relaychain.adapters.sink import CallbackSink, CollectingSink, QueueSink, Sink, SinkClosed
