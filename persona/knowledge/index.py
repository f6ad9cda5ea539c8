"""In-memory similarity index over the pre-embedded knowledge base.

Entries are loaded from JSON files once, on first use. Each file has the
shape ``{"version": ..., "lastUpdated": ..., "entries": [...]}`` and every
entry carries a precomputed embedding. Entries with an empty embedding,
or one whose length differs from the index dimension, are dropped at
load time so scoring can run as a single matrix product.

Retrieval is best-effort: an empty corpus, a disabled embedder or any
embedding API failure yields an empty result list instead of an error.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from pydantic import ValidationError

from persona.config import settings
from persona.knowledge.embeddings import OpenAIEmbedder
from persona.knowledge.models import KnowledgeEntry, KnowledgeFile, SearchResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from persona.knowledge.embeddings import Embedder

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity, or 0.0 for mismatched lengths and zero vectors."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / magnitude, -1.0, 1.0))


def format_knowledge_context(results: Sequence[SearchResult]) -> str:
    """Render results as bare remembered facts separated by blank lines.

    No headers or instructions: the text has to read like the persona's
    own memory, not like an attached document.
    """
    chunks = []
    for result in results:
        entry = result.entry
        text = entry.content
        if entry.date:
            text += f" ({entry.date})"
        if entry.context:
            text += f" - {entry.context}"
        chunks.append(text)
    return "\n\n".join(chunks)


class KnowledgeIndex:
    """Singleton knowledge index.

    Get the shared instance via ``KnowledgeIndex.get()``. Pass explicit
    arguments for test isolation.
    """

    _instance: KnowledgeIndex | None = None

    def __init__(
        self,
        embedder: Embedder | None = None,
        data_dir: Path | None = None,
        files: list[str] | None = None,
        dimensions: int | None = None,
    ) -> None:
        self._embedder = embedder or OpenAIEmbedder()
        self._data_dir = Path(data_dir or settings.knowledge_dir)
        self._files = files if files is not None else settings.get_knowledge_files()
        self._dimensions = settings.embedding_dimensions if dimensions is None else dimensions
        self._entries: tuple[KnowledgeEntry, ...] = ()
        self._matrix = np.empty((0, 0))
        self._norms = np.empty(0)
        self._loaded = False

    @classmethod
    def get(cls) -> KnowledgeIndex:
        """Return the shared KnowledgeIndex instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    @property
    def entries(self) -> tuple[KnowledgeEntry, ...]:
        self.ensure_loaded()
        return self._entries

    def __len__(self) -> int:
        return len(self.entries)

    # -- Loading -------------------------------------------------------------

    def ensure_loaded(self) -> None:
        """Load the knowledge files if this index has not loaded yet.

        Loading is synchronous, so concurrent first callers on the event
        loop cannot interleave inside it.
        """
        if not self._loaded:
            self.reload()

    def reload(self) -> int:
        """(Re)load all knowledge files. Returns the number of usable entries."""
        loaded: list[KnowledgeEntry] = []
        for filename in self._files:
            loaded.extend(self._load_file(self._data_dir / filename))

        dimension = self._dimensions or (len(loaded[0].embedding) if loaded else 0)
        entries = tuple(e for e in loaded if len(e.embedding) == dimension)
        dropped = len(loaded) - len(entries)
        if dropped:
            logger.warning(
                "Dropped %d knowledge entries with embedding dimension != %d", dropped, dimension
            )

        if entries:
            matrix = np.asarray([e.embedding for e in entries], dtype=np.float64)
        else:
            matrix = np.empty((0, dimension))

        self._entries = entries
        self._matrix = matrix
        self._norms = np.linalg.norm(matrix, axis=1) if entries else np.empty(0)
        self._loaded = True
        logger.info("Knowledge base loaded: %d entries", len(entries))
        return len(entries)

    def _load_file(self, path: Path) -> list[KnowledgeEntry]:
        """Parse one knowledge file. Failures are logged and yield no entries."""
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            parsed = KnowledgeFile.model_validate(raw)
        except (OSError, ValueError):
            logger.exception("Failed to load knowledge base file %s", path.name)
            return []

        entries = []
        for item in parsed.entries:
            try:
                entry = KnowledgeEntry.model_validate(item)
            except ValidationError:
                logger.warning("Skipping malformed knowledge entry in %s", path.name)
                continue
            if entry.embedding:
                entries.append(entry)

        logger.info("Loaded knowledge base file %s: %d entries", path.name, len(entries))
        return entries

    # -- Search --------------------------------------------------------------

    def score(self, query_vector: Sequence[float]) -> np.ndarray:
        """Cosine similarity of *query_vector* against every entry, in load order."""
        self.ensure_loaded()
        count = len(self._entries)
        query = np.asarray(query_vector, dtype=np.float64)
        if count == 0 or query.ndim != 1 or query.shape[0] != self._matrix.shape[1]:
            return np.zeros(count)

        denominators = self._norms * np.linalg.norm(query)
        dots = self._matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(denominators > 0, dots / denominators, 0.0)
        return np.clip(scores, -1.0, 1.0)

    def rank(
        self, query_vector: Sequence[float], *, top_k: int, min_score: float
    ) -> list[SearchResult]:
        """Top-k entries scoring at least *min_score*, best first.

        Ties keep load order.
        """
        if top_k <= 0:
            return []
        scores = self.score(query_vector)
        order = np.argsort(-scores, kind="stable")
        results = []
        for idx in order:
            score = float(scores[idx])
            if score < min_score:
                break
            results.append(SearchResult(entry=self._entries[idx], score=score))
            if len(results) == top_k:
                break
        return results

    async def search(
        self,
        query: str,
        *,
        top_k: int | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Semantic search over the knowledge base.

        Args:
            query: Natural-language query text.
            top_k: Max results (default from settings).
            min_score: Minimum cosine similarity (default from settings).

        Returns:
            Results sorted by score, highest first. Empty on any failure.
        """
        top_k = settings.knowledge_top_k if top_k is None else top_k
        min_score = settings.knowledge_min_score if min_score is None else min_score

        self.ensure_loaded()
        if not self._entries:
            logger.warning("Knowledge base is empty")
            return []
        if not query.strip() or not getattr(self._embedder, "enabled", True):
            return []

        try:
            query_vector = await self._embedder.embed(query)
        except Exception:
            logger.exception("Failed to embed knowledge base query")
            return []

        return self.rank(query_vector, top_k=top_k, min_score=min_score)
