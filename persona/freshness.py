"""Cheap keyword gate for queries that likely need live data."""

from collections.abc import Iterable

from persona.config import settings


def needs_fresh_answer(text: str | None, keywords: Iterable[str] | None = None) -> bool:
    """Return True when *text* mentions a temporal, market or weather term.

    Plain case-insensitive substring matching, so "now" also matches
    "know".
    """
    if not text:
        return False

    terms = settings.get_fresh_keywords() if keywords is None else keywords
    normalized = text.lower()
    return any(term.lower() in normalized for term in terms)
