"""Event types sent to clients over the SSE stream.

Each event is a dataclass; ``event_to_dict`` renders it with a ``type``
key and camelCase field names, dropping fields that are None.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from typing import Any

from relaychain.engine.models import camelize, to_camel


@dataclass
class StreamEvent:
    """Base event."""
    event_type: str = ""
    timestamp: float = field(default_factory=time.time)


# ── Single-step execution ──


@dataclass
class TokenEvent(StreamEvent):
    event_type: str = "token"
    content: str = ""
    step_id: str | None = None
    agent_index: int | None = None


@dataclass
class ThinkingEvent(StreamEvent):
    event_type: str = "thinking"
    thinking: str = ""
    is_thinking: bool = True
    step_id: str | None = None
    agent_index: int | None = None


@dataclass
class CompleteEvent(StreamEvent):
    event_type: str = "complete"
    content: str = ""
    thinking: str | None = None
    token_usage: dict[str, int] | None = None
    estimated_cost: float | None = None
    first_token_latency: float | None = None
    was_skipped: bool | None = None
    skip_reason: str | None = None
    step_id: str | None = None
    agent_index: int | None = None


@dataclass
class ErrorEvent(StreamEvent):
    event_type: str = "error"
    error: str = ""
    step_id: str | None = None
    agent_index: int | None = None


# ── Supervisor turns ──


@dataclass
class SupervisorTurnStart(StreamEvent):
    event_type: str = "supervisor_turn_start"
    turn_id: str = ""


@dataclass
class SupervisorChunk(StreamEvent):
    event_type: str = "supervisor_chunk"
    content: str = ""
    turn_id: str = ""
    is_completion: bool | None = None


@dataclass
class MentionExecutionStart(StreamEvent):
    event_type: str = "mention_execution_start"
    turn_id: str = ""
    mention_count: int = 0


@dataclass
class AgentExecutionInternal(StreamEvent):
    event_type: str = "agent_execution_internal"
    turn_id: str = ""
    agent_index: int = 0
    agent_name: str = ""
    user_prompt: str = ""


@dataclass
class AgentExecutionComplete(StreamEvent):
    event_type: str = "agent_execution_complete"
    turn_id: str = ""
    agent_index: int = 0
    agent_name: str = ""
    user_prompt: str = ""
    response: str = ""


@dataclass
class AgentExecutionError(StreamEvent):
    event_type: str = "agent_execution_error"
    turn_id: str = ""
    agent_index: int = 0
    agent_name: str = ""
    error: str = ""


@dataclass
class InvalidMentions(StreamEvent):
    event_type: str = "invalid_mentions"
    turn_id: str = ""
    mentions: list[str] = field(default_factory=list)


@dataclass
class SupervisorComplete(StreamEvent):
    event_type: str = "supervisor_complete"
    turn_id: str = ""
    executed_agents: list[int] = field(default_factory=list)
    failed_agents: list[int] = field(default_factory=list)
    agent_updates: list[dict[str, Any]] = field(default_factory=list)


_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "token": TokenEvent,
    "thinking": ThinkingEvent,
    "complete": CompleteEvent,
    "error": ErrorEvent,
    "supervisor_turn_start": SupervisorTurnStart,
    "supervisor_chunk": SupervisorChunk,
    "mention_execution_start": MentionExecutionStart,
    "agent_execution_internal": AgentExecutionInternal,
    "agent_execution_complete": AgentExecutionComplete,
    "agent_execution_error": AgentExecutionError,
    "invalid_mentions": InvalidMentions,
    "supervisor_complete": SupervisorComplete,
}


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a typed event to the camelCase wire dict."""
    d: dict[str, Any] = {}
    for f in fields(event):
        val = getattr(event, f.name)
        if val is not None:
            d[f.name] = val
    d["type"] = d.pop("event_type")
    return camelize(d)


def dict_to_event(data: dict[str, Any]) -> StreamEvent:
    """Parse a wire dict back into its typed event."""
    cls = _EVENT_MAP.get(data.get("type", ""), StreamEvent)
    by_camel = {to_camel(f.name): f.name for f in fields(cls)}
    kwargs = {
        by_camel[key]: value for key, value in data.items() if key in by_camel
    }
    if "type" in data:
        kwargs["event_type"] = data["type"]
    return cls(**kwargs)
