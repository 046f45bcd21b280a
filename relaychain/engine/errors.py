"""Exception hierarchy for the streaming execution engine.

Each failure mode has its own exception carrying the context the
server needs to answer the client. Pre-stream errors map to an HTTP
status; errors raised after a stream is open are converted into a
single ``error`` event instead.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relaychain errors."""

    status: int = 500


class ValidationError(RelayError):
    """Malformed or missing input, rejected before any stream opens."""

    status = 400

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class AuthError(RelayError):
    """Caller is unauthenticated or not allowed to touch the resource."""

    status = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(RelayError):
    """Requested session, step or turn does not exist."""

    status = 404

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class RateLimitError(RelayError):
    """Caller exceeded its request quota."""

    status = 429

    def __init__(self, limit: int, retry_after: float):
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded ({limit} requests). "
            f"Retry after {retry_after:.0f}s"
        )


class ProviderError(RelayError):
    """Upstream LLM call failed once streaming had begun."""

    status = 502

    def __init__(
        self, provider: str, message: str, status: int | None = None,
    ):
        self.provider = provider
        self.upstream_status = status
        super().__init__(message)


class PersistenceError(RelayError):
    """A durable write failed. Logged only, never surfaced to the client."""

    def __init__(self, step_id: str, kind: str, reason: str):
        self.step_id = step_id
        self.kind = kind
        self.reason = reason
        super().__init__(
            f"Persisting {kind} for {step_id} failed: {reason}"
        )


class PartialTaskFailure(RelayError):
    """One supervisor-delegated mention failed; the turn continues."""

    def __init__(self, agent_index: int, agent_name: str, reason: str):
        self.agent_index = agent_index
        self.agent_name = agent_name
        self.reason = reason
        super().__init__(f"{agent_name} failed: {reason}")
