"""Tests for the knowledge base similarity index."""

import json
import math
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from persona.knowledge.index import KnowledgeIndex, cosine_similarity, format_knowledge_context
from persona.knowledge.models import KnowledgeEntry, SearchResult


def _entry(entry_id: str, embedding: list[float], **extra) -> dict:
    return {"id": entry_id, "content": f"content {entry_id}", "embedding": embedding, **extra}


def _write(tmp_path: Path, name: str, entries: list[dict]) -> str:
    payload = {"version": "1", "lastUpdated": "2024-01-01", "entries": entries}
    (tmp_path / name).write_text(json.dumps(payload), encoding="utf-8")
    return name


def _embedder(vector: list[float]) -> MagicMock:
    embedder = MagicMock()
    embedder.enabled = True
    embedder.embed = AsyncMock(return_value=vector)
    return embedder


def _index(tmp_path: Path, entries: list[dict], query: list[float], dimensions: int = 2):
    name = _write(tmp_path, "kb.json", entries)
    return KnowledgeIndex(
        embedder=_embedder(query), data_dir=tmp_path, files=[name], dimensions=dimensions
    )


# -- cosine_similarity -----------------------------------------------------------


def test_cosine_identical_and_opposite() -> None:
    assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)


def test_cosine_is_symmetric_and_bounded() -> None:
    a, b = [0.3, -1.2, 4.0], [2.0, 0.5, -0.7]
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert -1.0 <= cosine_similarity(a, b) <= 1.0


def test_cosine_degenerate_inputs_score_zero() -> None:
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


# -- Loading -----------------------------------------------------------------------


def test_load_drops_empty_and_mismatched_embeddings(tmp_path: Path) -> None:
    index = _index(
        tmp_path,
        [
            _entry("good", [1.0, 0.0]),
            _entry("empty", []),
            _entry("wide", [1.0, 0.0, 0.0]),
            _entry("missing-embedding", []) | {"embedding": None},
        ],
        query=[1.0, 0.0],
    )

    assert [e.id for e in index.entries] == ["good"]


def test_load_skips_malformed_entries(tmp_path: Path) -> None:
    index = _index(
        tmp_path,
        [{"content": "no id", "embedding": [1.0, 0.0]}, _entry("ok", [0.0, 1.0])],
        query=[1.0, 0.0],
    )
    assert len(index) == 1


def test_missing_and_invalid_files_are_skipped(tmp_path: Path) -> None:
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    good = _write(tmp_path, "good.json", [_entry("a", [1.0, 0.0])])
    index = KnowledgeIndex(
        embedder=_embedder([1.0, 0.0]),
        data_dir=tmp_path,
        files=["absent.json", "broken.json", good],
        dimensions=2,
    )
    assert [e.id for e in index.entries] == ["a"]


def test_dimension_inferred_from_first_entry(tmp_path: Path) -> None:
    index = _index(
        tmp_path,
        [_entry("a", [1.0, 0.0, 0.0]), _entry("b", [1.0, 0.0]), _entry("c", [0.0, 1.0, 0.0])],
        query=[1.0, 0.0, 0.0],
        dimensions=0,
    )
    assert [e.id for e in index.entries] == ["a", "c"]


def test_entry_aliases_parse(tmp_path: Path) -> None:
    index = _index(
        tmp_path,
        [_entry("a", [1.0, 0.0], sourceType="book", keywords=["x", "y"], date="1999")],
        query=[1.0, 0.0],
    )
    entry = index.entries[0]
    assert entry.source_type == "book"
    assert entry.keywords == frozenset({"x", "y"})
    assert entry.date == "1999"


def test_loads_only_once(tmp_path: Path) -> None:
    index = _index(tmp_path, [_entry("a", [1.0, 0.0])], query=[1.0, 0.0])
    assert len(index) == 1

    _write(tmp_path, "kb.json", [_entry("a", [1.0, 0.0]), _entry("b", [0.0, 1.0])])
    assert len(index) == 1
    assert index.reload() == 2


# -- search ------------------------------------------------------------------------


async def test_search_orders_and_limits(tmp_path: Path) -> None:
    index = _index(
        tmp_path,
        [
            _entry("far", [0.0, 1.0]),
            _entry("close", [1.0, 0.1]),
            _entry("exact", [1.0, 0.0]),
            _entry("mid", [1.0, 1.0]),
        ],
        query=[1.0, 0.0],
    )

    results = await index.search("pirates", top_k=2, min_score=0.0)

    assert [r.entry.id for r in results] == ["exact", "close"]
    assert results[0].score == pytest.approx(1.0)
    assert results[0].score >= results[1].score


async def test_search_applies_min_score(tmp_path: Path) -> None:
    index = _index(
        tmp_path,
        [_entry("exact", [1.0, 0.0]), _entry("mid", [1.0, 1.0]), _entry("far", [0.0, 1.0])],
        query=[1.0, 0.0],
    )

    results = await index.search("pirates", top_k=5, min_score=0.5)

    assert [r.entry.id for r in results] == ["exact", "mid"]
    assert results[1].score == pytest.approx(1 / math.sqrt(2))
    assert all(r.score >= 0.5 for r in results)


async def test_search_ties_keep_load_order(tmp_path: Path) -> None:
    index = _index(
        tmp_path,
        [_entry("first", [2.0, 0.0]), _entry("second", [1.0, 0.0]), _entry("third", [3.0, 0.0])],
        query=[1.0, 0.0],
    )
    results = await index.search("pirates", top_k=3, min_score=0.0)
    assert [r.entry.id for r in results] == ["first", "second", "third"]


async def test_search_uses_settings_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("persona.config.settings.knowledge_top_k", 1)
    monkeypatch.setattr("persona.config.settings.knowledge_min_score", 0.0)
    index = _index(
        tmp_path, [_entry("a", [1.0, 0.0]), _entry("b", [0.9, 0.1])], query=[1.0, 0.0]
    )
    assert len(await index.search("pirates")) == 1


async def test_search_empty_index_returns_nothing(tmp_path: Path) -> None:
    index = _index(tmp_path, [], query=[1.0, 0.0])
    assert await index.search("pirates") == []
    index._embedder.embed.assert_not_awaited()


async def test_search_blank_query_skips_embedding(tmp_path: Path) -> None:
    index = _index(tmp_path, [_entry("a", [1.0, 0.0])], query=[1.0, 0.0])
    assert await index.search("   ") == []
    index._embedder.embed.assert_not_awaited()


async def test_search_disabled_embedder(tmp_path: Path) -> None:
    index = _index(tmp_path, [_entry("a", [1.0, 0.0])], query=[1.0, 0.0])
    index._embedder.enabled = False
    assert await index.search("pirates") == []


async def test_search_fails_closed_on_embed_error(tmp_path: Path) -> None:
    index = _index(tmp_path, [_entry("a", [1.0, 0.0])], query=[1.0, 0.0])
    index._embedder.embed = AsyncMock(side_effect=RuntimeError("quota exceeded"))
    assert await index.search("pirates") == []


async def test_search_wrong_query_dimension_matches_nothing(tmp_path: Path) -> None:
    index = _index(tmp_path, [_entry("a", [1.0, 0.0])], query=[1.0, 0.0, 0.0])
    assert await index.search("pirates", min_score=0.1) == []


# -- Singleton / formatting ----------------------------------------------------------


def test_get_returns_singleton() -> None:
    assert KnowledgeIndex.get() is KnowledgeIndex.get()


def test_format_knowledge_context() -> None:
    results = [
        SearchResult(
            entry=KnowledgeEntry(id="1", content="Sailed to Tonga", date="1998", context="storm"),
            score=0.9,
        ),
        SearchResult(entry=KnowledgeEntry(id="2", content="Wrote a book"), score=0.8),
    ]
    assert format_knowledge_context(results) == (
        "Sailed to Tonga (1998) - storm\n\nWrote a book"
    )


def test_format_knowledge_context_empty() -> None:
    assert format_knowledge_context([]) == ""
