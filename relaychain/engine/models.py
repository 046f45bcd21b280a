"""Core data models for the streaming execution engine.

All dataclasses and enums live here. Single source of truth to avoid
circular imports between the engine, the store and the server.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class ConnectionType(str, Enum):
    """How a chain step consumes the output of the steps before it."""
    DIRECT = "direct"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    COLLABORATIVE = "collaborative"


class ChunkKind(str, Enum):
    """Canonical chunk kinds produced by the StreamAdapter."""
    CONTENT = "content"
    THINKING = "thinking"
    COMPLETE = "complete"
    ERROR = "error"


class ModelType(str, Enum):
    REASONING = "reasoning"
    STANDARD = "standard"


def make_id(prefix: str = "") -> str:
    raw = uuid.uuid4().hex[:16]
    return f"{prefix}_{raw}" if prefix else raw


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def camelize(data: dict[str, Any]) -> dict[str, Any]:
    """Convert snake_case keys to the camelCase used on the wire."""
    return {to_camel(k): v for k, v in data.items()}


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: TokenUsage | None) -> TokenUsage:
        """Return the element-wise sum; ``None`` counts as zero."""
        if other is None:
            return TokenUsage(**asdict(self))
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return camelize(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenUsage | None:
        if not data:
            return None
        prompt = int(data.get("promptTokens", data.get("prompt_tokens", 0)) or 0)
        completion = int(
            data.get("completionTokens", data.get("completion_tokens", 0)) or 0
        )
        total = data.get("totalTokens", data.get("total_tokens"))
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(total) if total is not None else prompt + completion,
        )


@dataclass
class Chunk:
    """One element of the canonical stream.

    Content chunks carry a text delta in ``content``. The terminal chunk
    has ``is_complete=True``, the full accumulated text in ``content`` and
    the aggregated ``token_usage``.
    """
    kind: ChunkKind = ChunkKind.CONTENT
    content: str | None = None
    is_complete: bool = False
    token_usage: TokenUsage | None = None
    thinking: str | None = None
    is_thinking: bool | None = None

    @classmethod
    def text(cls, delta: str) -> Chunk:
        return cls(kind=ChunkKind.CONTENT, content=delta)

    @classmethod
    def reasoning(cls, text: str, is_thinking: bool = True) -> Chunk:
        return cls(kind=ChunkKind.THINKING, thinking=text, is_thinking=is_thinking)

    @classmethod
    def done(cls, content: str, usage: TokenUsage | None) -> Chunk:
        return cls(
            kind=ChunkKind.COMPLETE,
            content=content,
            is_complete=True,
            token_usage=usage or TokenUsage(),
        )

    @classmethod
    def failure(cls, message: str) -> Chunk:
        return cls(kind=ChunkKind.ERROR, content=message)

    @property
    def is_error(self) -> bool:
        return self.kind == ChunkKind.ERROR


@dataclass(frozen=True)
class ImageAttachment:
    """An image handed to a vision-capable model.

    ``url`` may be an http(s) URL or a ``data:`` URL.
    """
    url: str
    mime_type: str | None = None


@dataclass(frozen=True)
class MentionTask:
    agent_index: int
    agent_name: str
    task_prompt: str

    def to_dict(self) -> dict[str, Any]:
        return camelize(asdict(self))


@dataclass
class ConversationEntry:
    user_prompt: str
    agent_response: str
    triggered_by: str = "user"
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return camelize(asdict(self))


@dataclass
class AgentStep:
    """One LLM invocation plus its externally visible execution state."""
    step_id: str = field(default_factory=lambda: make_id("step"))
    session_id: str = ""
    index: int = 0
    model: str = ""
    prompt: str = ""
    name: str | None = None
    response: str | None = None
    streamed_content: str = ""
    thinking: str | None = None
    is_thinking: bool = False
    is_streaming: bool = False
    is_complete: bool = False
    error: str | None = None
    token_usage: TokenUsage | None = None
    estimated_cost: float | None = None
    execution_start_time: float | None = None
    execution_end_time: float | None = None
    execution_duration: float | None = None
    tokens_per_second: float | None = None
    first_token_latency: float | None = None
    connection_type: ConnectionType = ConnectionType.DIRECT
    connection_condition: str | None = None
    source_agent_index: int | None = None
    was_skipped: bool = False
    skip_reason: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def display_name(self) -> str:
        return self.name or f"Agent {self.index + 1}"

    @property
    def latest_output(self) -> str:
        return self.response or self.streamed_content or ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, TokenUsage):
                value = value.to_dict()
            elif isinstance(value, Enum):
                value = value.value
            data[f.name] = value
        return camelize(data)

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}


@dataclass
class SupervisorTurn:
    turn_id: str = field(default_factory=lambda: make_id("turn"))
    session_id: str = ""
    user_input: str = ""
    supervisor_response: str = ""
    streamed_content: str = ""
    parsed_mentions: list[MentionTask] = field(default_factory=list)
    executed_step_ids: list[str] = field(default_factory=list)
    is_complete: bool = False
    is_streaming: bool = True
    error: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["parsed_mentions"] = [m.to_dict() for m in self.parsed_mentions]
        return camelize(data)

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}


@dataclass
class ThinkingPhase:
    phase_id: str
    content: str
    duration_ms: int
    timestamp: float = 0.0


@dataclass
class ThinkingState:
    phases: list[ThinkingPhase] = field(default_factory=list)
    current_phase: int = 0
    is_active: bool = False
    full_content: str = ""
    start_time: float = 0.0
    provider: str = "default"
    model_type: ModelType = ModelType.STANDARD
