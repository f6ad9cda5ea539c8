"""Message, usage and response types shared by the generation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class Message:
    """A single conversation turn."""

    role: Role
    content: str

    def to_api(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Usage:
    """Token accounting for one or more upstream calls."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    def to_dict(self) -> dict[str, int]:
        data = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class Completion:
    """Raw result of a single upstream model call."""

    text: str
    model: str
    usage: Usage | None = None


@dataclass(frozen=True)
class PersonaResponse:
    """Final user-facing response.

    ``from_cache`` is rewritten by the response cache on every access, so
    the same stored value reports correctly to writer and readers.
    """

    text: str
    model: str
    usage: Usage | None = None
    from_cache: bool = False
    used_fallback: bool = False

    def tagged(self, *, from_cache: bool) -> PersonaResponse:
        return replace(self, from_cache=from_cache)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "text": self.text,
            "model": self.model,
            "fromCache": self.from_cache,
        }
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.used_fallback:
            data["meta"] = {"usedFallback": True}
        return data


def merge_usage(*usages: Usage | None) -> Usage | None:
    """Sum usage records field-wise.

    Missing records and fields count as zero. An all-zero total collapses
    to None rather than a record of zeros; individual zero fields become None.
    """
    input_tokens = output_tokens = total_tokens = 0
    for usage in usages:
        if usage is None:
            continue
        input_tokens += usage.input_tokens or 0
        output_tokens += usage.output_tokens or 0
        total_tokens += usage.total_tokens or 0

    if input_tokens == 0 and output_tokens == 0 and total_tokens == 0:
        return None

    return Usage(
        input_tokens=input_tokens or None,
        output_tokens=output_tokens or None,
        total_tokens=total_tokens or None,
    )


def latest_user_message(messages: list[Message]) -> str:
    """Return the content of the most recent user turn, or ''."""
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""
