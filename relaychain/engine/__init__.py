"""Streaming execution engine: providers, thinking, persistence and supervision."""
from .models import (
    AgentStep,
    Chunk,
    ChunkKind,
    ConnectionType,
    ConversationEntry,
    ImageAttachment,
    MentionTask,
    SupervisorTurn,
    TokenUsage,
)
from .config import EngineConfig
from .errors import (
    AuthError,
    NotFoundError,
    PartialTaskFailure,
    PersistenceError,
    ProviderError,
    RateLimitError,
    RelayError,
    ValidationError,
)

__all__ = [
    # Models
    "AgentStep",
    "Chunk",
    "ChunkKind",
    "ConnectionType",
    "ConversationEntry",
    "ImageAttachment",
    "MentionTask",
    "SupervisorTurn",
    "TokenUsage",
    # Config
    "EngineConfig",
    # Errors
    "AuthError",
    "NotFoundError",
    "PartialTaskFailure",
    "PersistenceError",
    "ProviderError",
    "RateLimitError",
    "RelayError",
    "ValidationError",
    # Pipeline (lazy import to avoid circular deps with adapters)
    "StreamAdapter",
    "ThinkingManager",
    "PersistenceQueue",
    "AgentExecutor",
    "ChainRunner",
    "SupervisorOrchestrator",
    "MentionParser",
    "load_yaml_config",
]


def __getattr__(name: str):
    if name == "StreamAdapter":
        from .stream_adapter import StreamAdapter
        return StreamAdapter
    if name == "ThinkingManager":
        from .thinking import ThinkingManager
        return ThinkingManager
    if name == "PersistenceQueue":
        from .persistence_queue import PersistenceQueue
        return PersistenceQueue
    if name == "AgentExecutor":
        from .executor import AgentExecutor
        return AgentExecutor
    if name == "ChainRunner":
        from .executor import ChainRunner
        return ChainRunner
    if name == "SupervisorOrchestrator":
        from .supervisor import SupervisorOrchestrator
        return SupervisorOrchestrator
    if name == "MentionParser":
        from .mention_parser import MentionParser
        return MentionParser
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
