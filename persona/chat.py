"""Chat request pipeline: cache lookup, search decision, generation, write-back."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from persona.cache import ResponseCache, should_bypass_cache
from persona.config import settings
from persona.freshness import needs_fresh_answer
from persona.llm import orchestrator
from persona.llm.models import Message, PersonaResponse, latest_user_message

logger = logging.getLogger(__name__)

MAX_ASSISTANT_CHARS = 2500


class CacheStatus(StrEnum):
    HIT = "HIT"
    MISS = "MISS"
    BYPASS = "BYPASS"


@dataclass(frozen=True)
class ChatResult:
    response: PersonaResponse
    cache_status: CacheStatus
    used_search: bool

    def to_dict(self) -> dict:
        return {**self.response.to_dict(), "usedSearch": self.used_search}


def limit_messages(messages: list[Message], window: int | None = None) -> list[Message]:
    """Keep the most recent turns and cap long assistant replies."""
    window = window or settings.cache_context_messages
    limited = []
    for message in messages[-window:]:
        if message.role == "assistant" and len(message.content) > MAX_ASSISTANT_CHARS:
            message = Message(
                role="assistant", content=f"{message.content[:MAX_ASSISTANT_CHARS]} …"
            )
        limited.append(message)
    return limited


async def respond(
    messages: list[Message],
    *,
    use_search: bool | None = None,
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    cache: ResponseCache | None = None,
) -> ChatResult:
    """Answer a stateless chat request.

    Args:
        messages: Full client-side conversation, oldest first.
        use_search: Force (True) or forbid (False) search mode. When None,
            search mode follows the freshness check on the latest user turn.
        temperature: Default-mode sampling temperature.
        max_output_tokens: Output budget override.
        cache: Response cache (shared instance by default).

    Returns:
        The response with its cache status and whether search mode ran.
    """
    if cache is None:
        cache = ResponseCache.get()
    trimmed = limit_messages(messages, cache.window)
    latest = latest_user_message(trimmed)

    bypass = should_bypass_cache(trimmed, use_search)
    should_search = needs_fresh_answer(latest) if use_search is None else use_search

    key = None
    if not bypass:
        lookup = cache.lookup(trimmed)
        if lookup.cached is not None:
            return ChatResult(lookup.cached, CacheStatus.HIT, used_search=False)
        key = lookup.key

    if should_search:
        response = await orchestrator.generate_with_fallback(
            trimmed, max_output_tokens=max_output_tokens
        )
    else:
        response = await orchestrator.generate(
            trimmed, temperature=temperature, max_output_tokens=max_output_tokens
        )

    if not bypass and not should_search:
        cache.store(key, response)

    status = CacheStatus.BYPASS if bypass else CacheStatus.MISS
    return ChatResult(response, status, used_search=should_search)
