"""Fixed-window admission control per client key.

Each client key gets a counter and a window end. The first request of a
window starts it with count 1; the request that would push the count past
the configured maximum is rejected with a retry-after hint. A background
sweep drops buckets whose window already elapsed so memory stays bounded
regardless of how many distinct clients show up.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from persona.config import settings

logger = logging.getLogger(__name__)

ANONYMOUS_KEY = "anonymous"


@dataclass
class RateBucket:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateDecision:
    """Outcome of an admission check.

    ``applies`` is False for paths outside the limited set; such requests
    are always allowed and carry no limit metadata.
    """

    allowed: bool
    applies: bool = True
    limit: int = 0
    remaining: int = 0
    reset_at: float = 0.0
    retry_after: int | None = None

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* headers (plus Retry-After on rejection)."""
        if not self.applies:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(self.remaining, 0)),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def client_key(headers: Mapping[str, str], peer: str | None) -> str:
    """First X-Forwarded-For hop, else the peer address, else a shared bucket.

    Forwarded headers are client-controlled, so this is a heuristic rather
    than an identity.
    """
    forwarded = headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer or ANONYMOUS_KEY


class RateLimiter:
    """Singleton admission controller.

    Get the shared instance via ``RateLimiter.get()``. Timestamps are in
    seconds from *clock* (wall clock by default so reset times can be
    surfaced to clients).
    """

    _instance: RateLimiter | None = None

    def __init__(
        self,
        max_requests: int | None = None,
        window_seconds: float | None = None,
        paths: list[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_requests = max_requests or settings.rate_limit_max
        self.window_seconds = window_seconds or settings.rate_limit_window_ms / 1000
        patterns = paths if paths is not None else settings.get_rate_limit_paths()
        self._patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self._clock = clock
        self._buckets: dict[str, RateBucket] = {}

    @classmethod
    def get(cls) -> RateLimiter:
        """Return the shared RateLimiter instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    def __len__(self) -> int:
        return len(self._buckets)

    def applies_to(self, path: str) -> bool:
        return any(p.search(path) for p in self._patterns)

    def admit(self, key: str, path: str) -> RateDecision:
        """Count one request from *key* against its current window.

        No awaits happen between reading and updating the bucket, so the
        increment is atomic on the event loop.
        """
        if not self.applies_to(path):
            return RateDecision(allowed=True, applies=False)

        now = self._clock()
        bucket = self._buckets.get(key)

        if bucket is None or bucket.reset_at <= now:
            bucket = RateBucket(count=1, reset_at=now + self.window_seconds)
            self._buckets[key] = bucket
            return self._decision(True, bucket)

        if bucket.count >= self.max_requests:
            retry_after = math.ceil(bucket.reset_at - now)
            logger.warning("Rate limit exceeded: key=%s path=%s", key, path)
            return RateDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=bucket.reset_at,
                retry_after=max(retry_after, 1),
            )

        bucket.count += 1
        return self._decision(True, bucket)

    def _decision(self, allowed: bool, bucket: RateBucket) -> RateDecision:
        return RateDecision(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(self.max_requests - bucket.count, 0),
            reset_at=bucket.reset_at,
        )

    def sweep(self) -> int:
        """Drop buckets whose window has elapsed. Returns the count removed."""
        now = self._clock()
        expired = [key for key, bucket in self._buckets.items() if bucket.reset_at <= now]
        for key in expired:
            del self._buckets[key]
        if expired:
            logger.debug("Cleaned up %d expired rate limit buckets", len(expired))
        return len(expired)

    def reset(self) -> None:
        self._buckets.clear()


async def sweep_loop(limiter: RateLimiter, interval_seconds: float) -> None:
    """Periodically sweep expired buckets. Runs forever as a background task."""
    while True:
        await asyncio.sleep(interval_seconds)
        limiter.sweep()


def start_sweeper(
    limiter: RateLimiter | None = None, interval_seconds: float | None = None
) -> asyncio.Task:
    """Spawn the sweep loop as a background task and return it."""
    if limiter is None:
        limiter = RateLimiter.get()
    interval = interval_seconds or settings.rate_limit_sweep_seconds
    task = asyncio.ensure_future(sweep_loop(limiter, interval))
    logger.info("Rate limit sweeper started (interval=%ss)", interval)
    return task


async def stop_sweeper(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
