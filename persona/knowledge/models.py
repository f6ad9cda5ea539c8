"""Data models for the embedded knowledge base."""

from pydantic import BaseModel, ConfigDict, Field


class KnowledgeEntry(BaseModel):
    """A pre-embedded piece of biographical, book or web content."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    category: str = "general"
    content: str
    date: str | None = None
    source: str = ""
    source_type: str = Field(default="", alias="sourceType")
    keywords: frozenset[str] = frozenset()
    context: str | None = None
    embedding: tuple[float, ...] = ()


class KnowledgeFile(BaseModel):
    """Top-level shape of a knowledge JSON file."""

    version: str = ""
    last_updated: str = Field(default="", alias="lastUpdated")
    entries: list[dict] = Field(default_factory=list)


class SearchResult(BaseModel):
    """A knowledge entry with its cosine similarity to the query."""

    entry: KnowledgeEntry
    score: float
