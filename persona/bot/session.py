"""In-memory conversation sessions with a sliding window and idle expiry."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from cachetools import TTLCache

from persona.config import settings
from persona.llm.models import Message

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Conversation history for a single chat."""

    messages: list[Message] = field(default_factory=list)
    window_size: int = field(default_factory=lambda: settings.telegram_max_history)
    last_activity: float = 0.0

    def add(self, message: Message, now: float) -> None:
        """Append a message and trim to the sliding window."""
        self.messages.append(message)
        if len(self.messages) > self.window_size:
            self.messages = self.messages[-self.window_size :]
        self.last_activity = now


class ConversationStore:
    """Per-user message history for transports without client-side history.

    Sessions expire after ``ttl_seconds`` without a write and the least
    recently used session is evicted once ``max_sessions`` is reached.
    Callers only ever get copies of the stored messages.
    """

    _instance: ConversationStore | None = None

    def __init__(
        self,
        max_history: int | None = None,
        ttl_seconds: float | None = None,
        max_sessions: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_history = max_history or settings.telegram_max_history
        self._clock = clock
        self._sessions: TTLCache[str, Session] = TTLCache(
            maxsize=max_sessions or settings.telegram_max_sessions,
            ttl=ttl_seconds or settings.telegram_session_ttl_minutes * 60,
            timer=clock,
        )

    @classmethod
    def get(cls) -> ConversationStore:
        """Return the shared ConversationStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    def history(self, user_key: str) -> list[Message]:
        session = self._sessions.get(user_key)
        return list(session.messages) if session else []

    def add(self, user_key: str, message: Message) -> None:
        """Append to a user's history, creating the session if needed.

        Re-inserting the session restarts its idle timer.
        """
        session = self._sessions.get(user_key) or Session(window_size=self.max_history)
        session.add(message, self._clock())
        self._sessions[user_key] = session

    def extend(self, user_key: str, messages: list[Message]) -> None:
        for message in messages:
            self.add(user_key, message)

    def clear(self, user_key: str) -> int:
        """Drop one user's history. Returns the number of messages removed."""
        session = self._sessions.pop(user_key, None)
        return len(session.messages) if session else 0

    def clear_all(self) -> None:
        self._sessions.clear()

    def stats(self) -> dict[str, int]:
        self._sessions.expire()
        return {"active_conversations": len(self._sessions)}
