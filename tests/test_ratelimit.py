"""Tests for the fixed-window admission controller."""

import asyncio

import pytest

from persona.ratelimit import (
    ANONYMOUS_KEY,
    RateLimiter,
    client_key,
    start_sweeper,
    stop_sweeper,
    sweep_loop,
)


@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(max_requests=3, window_seconds=1.0, paths=["^/api/"], clock=clock)


# -- admit ---------------------------------------------------------------------


def test_admits_max_then_rejects(limiter: RateLimiter, clock) -> None:
    decisions = [limiter.admit("1.2.3.4", "/api/chat") for _ in range(3)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]

    clock.advance(0.25)
    rejected = limiter.admit("1.2.3.4", "/api/chat")
    assert rejected.allowed is False
    assert rejected.remaining == 0
    assert rejected.retry_after == 1
    assert rejected.retry_after > 0


def test_new_window_after_elapsed(limiter: RateLimiter, clock) -> None:
    for _ in range(4):
        limiter.admit("1.2.3.4", "/api/chat")

    clock.advance(1.0)
    decision = limiter.admit("1.2.3.4", "/api/chat")
    assert decision.allowed is True
    assert decision.remaining == limiter.max_requests - 1
    assert decision.reset_at == clock.now + 1.0


def test_rejection_does_not_extend_window(limiter: RateLimiter, clock) -> None:
    first = limiter.admit("k", "/api/chat")
    for _ in range(5):
        limiter.admit("k", "/api/chat")
    assert limiter.admit("k", "/api/chat").reset_at == first.reset_at


def test_retry_after_rounds_up(clock) -> None:
    limiter = RateLimiter(max_requests=1, window_seconds=10.0, paths=["^/api/"], clock=clock)
    limiter.admit("k", "/api/chat")
    clock.advance(2.5)
    assert limiter.admit("k", "/api/chat").retry_after == 8


def test_keys_are_independent(limiter: RateLimiter) -> None:
    for _ in range(3):
        limiter.admit("a", "/api/chat")
    assert limiter.admit("a", "/api/chat").allowed is False
    assert limiter.admit("b", "/api/chat").allowed is True


def test_unmatched_paths_pass_untouched(limiter: RateLimiter) -> None:
    for _ in range(10):
        decision = limiter.admit("a", "/health")
        assert decision.allowed is True
        assert decision.applies is False
        assert decision.headers() == {}
    assert len(limiter) == 0


def test_path_match_is_case_insensitive(limiter: RateLimiter) -> None:
    assert limiter.applies_to("/API/chat") is True


# -- headers ---------------------------------------------------------------------


def test_headers_for_admitted_request(limiter: RateLimiter, clock) -> None:
    headers = limiter.admit("a", "/api/chat").headers()
    assert headers["X-RateLimit-Limit"] == "3"
    assert headers["X-RateLimit-Remaining"] == "2"
    assert headers["X-RateLimit-Reset"] == str(int(clock.now + 1))
    assert "Retry-After" not in headers


def test_headers_for_rejected_request(limiter: RateLimiter) -> None:
    for _ in range(3):
        limiter.admit("a", "/api/chat")
    headers = limiter.admit("a", "/api/chat").headers()
    assert headers["X-RateLimit-Remaining"] == "0"
    assert headers["Retry-After"] == "1"


# -- client_key --------------------------------------------------------------------


def test_client_key_prefers_forwarded_for() -> None:
    headers = {"X-Forwarded-For": " 10.0.0.1 , 172.16.0.1"}
    assert client_key(headers, "127.0.0.1") == "10.0.0.1"


def test_client_key_falls_back_to_peer() -> None:
    assert client_key({}, "127.0.0.1") == "127.0.0.1"


def test_client_key_anonymous() -> None:
    assert client_key({"X-Forwarded-For": " , "}, None) == ANONYMOUS_KEY


# -- sweep -------------------------------------------------------------------------


def test_sweep_removes_only_expired_buckets(limiter: RateLimiter, clock) -> None:
    limiter.admit("old", "/api/chat")
    clock.advance(0.5)
    limiter.admit("new", "/api/chat")
    clock.advance(0.6)

    assert limiter.sweep() == 1
    assert len(limiter) == 1


async def test_sweep_loop_runs_each_interval(
    limiter: RateLimiter, clock, monkeypatch: pytest.MonkeyPatch
) -> None:
    limiter.admit("a", "/api/chat")
    clock.advance(5)
    intervals: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        intervals.append(seconds)
        if len(intervals) > 1:
            raise asyncio.CancelledError

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    with pytest.raises(asyncio.CancelledError):
        await sweep_loop(limiter, 30)

    assert intervals == [30, 30]
    assert len(limiter) == 0


async def test_start_and_stop_sweeper(limiter: RateLimiter) -> None:
    task = start_sweeper(limiter, interval_seconds=3600)
    assert not task.done()
    await stop_sweeper(task)
    assert task.cancelled()


async def test_stop_sweeper_none_is_noop() -> None:
    await stop_sweeper(None)


async def test_sweeper_uses_injected_empty_limiter(
    limiter: RateLimiter, monkeypatch: pytest.MonkeyPatch
) -> None:
    assert len(limiter) == 0
    swept: list[RateLimiter] = []
    monkeypatch.setattr(RateLimiter, "sweep", lambda self: swept.append(self) or 0)

    task = start_sweeper(limiter, interval_seconds=0.001)
    try:
        for _ in range(50):
            if swept:
                break
            await asyncio.sleep(0.001)
    finally:
        await stop_sweeper(task)

    assert swept
    assert all(s is limiter for s in swept)


async def test_interleaved_admits_on_one_key(limiter: RateLimiter) -> None:
    async def request() -> bool:
        await asyncio.sleep(0)
        return limiter.admit("1.2.3.4", "/api/chat").allowed

    results = await asyncio.gather(*(request() for _ in range(5)))

    assert results == [True, True, True, False, False]
