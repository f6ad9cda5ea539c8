"""Shared test fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from persona.bot.session import ConversationStore
from persona.cache import ResponseCache
from persona.knowledge.index import KnowledgeIndex
from persona.ratelimit import RateLimiter


class FakeClock:
    """Manually advanced clock for TTL and window tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _isolate_shared_state(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Fresh singletons, an empty knowledge index and a fake API key per test."""
    monkeypatch.setattr("persona.config.settings.anthropic_api_key", "test-key")
    monkeypatch.setattr("persona.config.settings.telegram_bot_token", "")
    monkeypatch.setattr("persona.config.settings.telegram_webhook_secret", "")
    monkeypatch.setattr("persona.config.settings.environment", "test")
    monkeypatch.setattr("persona.bot.telegram.handlers._bot_username", None)
    monkeypatch.setattr("persona.bot.telegram.app._bot", None)

    embedder = MagicMock()
    embedder.embed = AsyncMock(return_value=[])
    ResponseCache._reset()
    RateLimiter._reset()
    ConversationStore._reset()
    KnowledgeIndex._instance = KnowledgeIndex(embedder=embedder, data_dir=tmp_path, files=[])
    yield
    ResponseCache._reset()
    RateLimiter._reset()
    ConversationStore._reset()
    KnowledgeIndex._reset()
