"""RateLimiter tests on a manual clock."""
from __future__ import annotations

import logging

import pytest

from relaychain.engine.errors import RateLimitError
from relaychain.engine.rate_limiter import RateLimiter
from relaychain.engine.scheduler import ManualScheduler


@pytest.mark.asyncio
async def test_limit_then_window_slides():
    clock = ManualScheduler(start=100.0)
    limiter = RateLimiter(limit=2, window_seconds=60, scheduler=clock)

    assert limiter.check("alice") == (True, 0.0)
    await clock.advance(10)
    assert limiter.check("alice") == (True, 0.0)
    allowed, retry_after = limiter.check("alice")
    assert not allowed
    assert retry_after == pytest.approx(50.0)

    await clock.advance(50)
    assert limiter.check("alice")[0] is True


def test_identities_are_independent():
    limiter = RateLimiter(limit=1, scheduler=ManualScheduler())
    assert limiter.check("a")[0]
    assert limiter.check("b")[0]
    assert not limiter.check("a")[0]


def test_enforce_raises_with_retry_after(caplog):
    limiter = RateLimiter(limit=1, window_seconds=30, scheduler=ManualScheduler())
    limiter.enforce("ip:127.0.0.1")
    with caplog.at_level(logging.WARNING, logger="relaychain.engine.rate_limiter"):
        with pytest.raises(RateLimitError) as info:
            limiter.enforce("ip:127.0.0.1")
    assert info.value.status == 429
    assert info.value.retry_after == pytest.approx(30.0)
    assert "Rate limit hit" in caplog.text


def test_zero_limit_disables():
    limiter = RateLimiter(limit=0, scheduler=ManualScheduler())
    for _ in range(100):
        limiter.enforce("x")


def test_reset():
    limiter = RateLimiter(limit=1, scheduler=ManualScheduler())
    limiter.check("a")
    limiter.check("b")
    limiter.reset("a")
    assert limiter.check("a")[0]
    assert not limiter.check("b")[0]
    limiter.reset()
    assert limiter.check("b")[0]


@pytest.mark.asyncio
async def test_expired_identity_is_forgotten():
    clock = ManualScheduler()
    limiter = RateLimiter(limit=1, window_seconds=30, scheduler=clock)
    limiter.check("once")
    assert "once" in limiter._hits

    await clock.advance(31)
    assert limiter.check("once") == (True, 0.0)
    await clock.advance(31)
    assert limiter.check("other")[0]

    assert "once" not in limiter._hits
    assert list(limiter._hits) == ["other"]


@pytest.mark.asyncio
async def test_stale_callers_are_swept():
    clock = ManualScheduler()
    limiter = RateLimiter(limit=1, window_seconds=30, scheduler=clock)
    for n in range(5):
        limiter.check(f"caller-{n}")
    await clock.advance(31)
    limiter.check("late")
    assert list(limiter._hits) == ["late"]
