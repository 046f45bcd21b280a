"""Per-identity sliding-window request limiting."""
from __future__ import annotations

import logging
from collections import deque

from .errors import RateLimitError
from .scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allows ``limit`` requests per ``window_seconds`` for each identity.

    Identities are opaque strings (bearer token, remote address). A limit
    of zero or less disables limiting.
    """

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60.0,
        *,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._scheduler = scheduler or AsyncioScheduler()
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = self._scheduler.now()

    def _prune(self, identity: str, now: float) -> deque[float]:
        hits = self._hits.get(identity)
        if hits is None:
            return deque()
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if not hits:
            del self._hits[identity]
        return hits

    def _sweep(self, now: float) -> None:
        # Identities that stop calling would otherwise keep their entry.
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for identity in list(self._hits):
            self._prune(identity, now)

    def check(self, identity: str) -> tuple[bool, float]:
        """Record a request. Returns ``(allowed, retry_after_seconds)``."""
        if self.limit <= 0:
            return True, 0.0
        now = self._scheduler.now()
        self._sweep(now)
        hits = self._prune(identity, now)
        if len(hits) >= self.limit:
            retry_after = max(hits[0] + self.window_seconds - now, 0.0)
            return False, retry_after
        hits.append(now)
        self._hits[identity] = hits
        return True, 0.0

    def enforce(self, identity: str) -> None:
        allowed, retry_after = self.check(identity)
        if not allowed:
            logger.warning(
                "Rate limit hit identity=%s limit=%d retry_after=%.1f",
                identity, self.limit, retry_after,
            )
            raise RateLimitError(self.limit, retry_after)

    def reset(self, identity: str | None = None) -> None:
        if identity is None:
            self._hits.clear()
        else:
            self._hits.pop(identity, None)
