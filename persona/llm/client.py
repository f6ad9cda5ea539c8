"""Async Claude API client for single-shot persona and intel calls."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from persona.config import settings
from persona.llm.models import Completion, Message, Usage

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "web_search_20250305",
    "name": "web_search",
    "max_uses": 3,
}

_client: anthropic.AsyncAnthropic | None = None


class ConfigurationError(RuntimeError):
    """A required upstream credential is missing."""


def ensure_api_key() -> None:
    if not settings.anthropic_api_key:
        raise ConfigurationError("ANTHROPIC_API_KEY is required but missing")


def _get_client() -> anthropic.AsyncAnthropic:
    """Lazily initialize the Anthropic client."""
    global _client  # noqa: PLW0603
    ensure_api_key()
    if _client is None:
        _client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return _client


def extract_text(content: list[Any]) -> str:
    """Join the text blocks of a response, skipping tool-use blocks."""
    if not content:
        return ""
    return "".join(block.text for block in content if getattr(block, "type", None) == "text").strip()


def _to_usage(raw: Any) -> Usage | None:
    if raw is None:
        return None
    input_tokens = getattr(raw, "input_tokens", None)
    output_tokens = getattr(raw, "output_tokens", None)
    input_tokens = input_tokens if isinstance(input_tokens, int) else None
    output_tokens = output_tokens if isinstance(output_tokens, int) else None
    total = None
    if input_tokens is not None or output_tokens is not None:
        total = (input_tokens or 0) + (output_tokens or 0)
    return Usage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)


def _to_api_messages(messages: list[Message]) -> list[dict[str, str]]:
    """Format messages for the Claude API, which must open with a user turn."""
    api_messages = [m.to_api() for m in messages]
    while api_messages and api_messages[0]["role"] != "user":
        api_messages.pop(0)
    return api_messages


async def complete(
    messages: list[Message],
    *,
    system: str,
    temperature: float,
    max_tokens: int,
    web_search: bool = False,
    model: str | None = None,
) -> Completion:
    """Single Claude call, optionally with the server-side web search tool."""
    client = _get_client()
    kwargs: dict[str, Any] = {
        "model": model or settings.claude_model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "system": system,
        "messages": _to_api_messages(messages),
    }
    if web_search:
        kwargs["tools"] = [WEB_SEARCH_TOOL]

    response = await client.messages.create(**kwargs)
    return Completion(
        text=extract_text(response.content),
        model=getattr(response, "model", None) or kwargs["model"],
        usage=_to_usage(getattr(response, "usage", None)),
    )
