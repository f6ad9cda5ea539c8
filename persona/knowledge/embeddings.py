"""Query embeddings via the OpenAI embeddings API."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from persona.config import settings

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

_client: AsyncOpenAI | None = None


@runtime_checkable
class Embedder(Protocol):
    """Anything that can turn a query into a fixed-length vector."""

    async def embed(self, text: str) -> list[float]:
        ...


def _get_client() -> AsyncOpenAI:
    """Return a lazily-initialised AsyncOpenAI singleton."""
    global _client  # noqa: PLW0603
    if _client is None:
        from openai import AsyncOpenAI

        _client = AsyncOpenAI(api_key=settings.openai_api_key)
    return _client


class OpenAIEmbedder:
    """Embeds queries with the same model used to build the knowledge files."""

    def __init__(self, model: str | None = None, max_input_chars: int | None = None) -> None:
        self.model = model or settings.embedding_model
        self.max_input_chars = max_input_chars or settings.embedding_max_input_chars

    @property
    def enabled(self) -> bool:
        return bool(settings.openai_api_key)

    async def embed(self, text: str) -> list[float]:
        if not self.enabled:
            raise RuntimeError("OPENAI_API_KEY is not configured")
        response = await _get_client().embeddings.create(
            model=self.model,
            input=text[: self.max_input_chars],
        )
        return list(response.data[0].embedding)
