"""Content-addressed response cache keyed by a normalized conversation window."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from cachetools import TTLCache

from persona.config import settings
from persona.freshness import needs_fresh_answer
from persona.llm.models import Message, PersonaResponse, latest_user_message

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Lower-case, collapse whitespace runs and trim."""
    return _WHITESPACE.sub(" ", value.lower()).strip()


def build_cache_key(messages: list[Message], window: int | None = None) -> str | None:
    """SHA-256 fingerprint of the last *window* messages, or None if blank."""
    window = settings.cache_context_messages if window is None else window
    recent = messages[-window:] if window > 0 else []
    if not recent:
        return None

    normalized = [(m.role, normalize_text(m.content)) for m in recent]
    if not any(content for _, content in normalized):
        return None

    joined = "|".join(f"{role}:{content}" for role, content in normalized)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def should_bypass_cache(messages: list[Message], use_search: bool | None = None) -> bool:
    """Search-mode and time-sensitive requests are never served from or written to cache."""
    if use_search:
        return True
    return needs_fresh_answer(latest_user_message(messages))


@dataclass(frozen=True)
class CacheLookup:
    key: str | None
    cached: PersonaResponse | None


class ResponseCache:
    """LRU response cache with a per-entry time-to-live.

    Singleton accessed via ``ResponseCache.get()``. Pass explicit limits and
    a *clock* for test isolation.
    """

    _instance: ResponseCache | None = None

    def __init__(
        self,
        max_entries: int | None = None,
        ttl_seconds: float | None = None,
        window: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window or settings.cache_context_messages
        self._entries: TTLCache[str, PersonaResponse] = TTLCache(
            maxsize=max_entries or settings.cache_max_entries,
            ttl=ttl_seconds or settings.cache_ttl_seconds,
            timer=clock,
        )

    @classmethod
    def get(cls) -> ResponseCache:
        """Return the shared ResponseCache instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    def __len__(self) -> int:
        self._entries.expire()
        return len(self._entries)

    def lookup(self, messages: list[Message]) -> CacheLookup:
        """Fingerprint *messages* and return any live cached response.

        A hit also refreshes the entry's LRU position.
        """
        key = build_cache_key(messages, self.window)
        if key is None:
            return CacheLookup(key=None, cached=None)

        cached = self._entries.get(key)
        if cached is None:
            return CacheLookup(key=key, cached=None)

        logger.debug("Cache hit: %s", key[:12])
        return CacheLookup(key=key, cached=cached.tagged(from_cache=True))

    def store(self, key: str | None, response: PersonaResponse) -> bool:
        """Cache *response* under *key*. Fallback responses are never stored.

        Returns True if the response was stored.
        """
        if key is None or response.used_fallback:
            return False
        self._entries[key] = response.tagged(from_cache=False)
        return True

    def clear(self) -> None:
        self._entries.clear()
