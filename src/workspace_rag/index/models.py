"""
Index Data Models

Query-side representations of persisted chunks. Instances are immutable
and only valid for the retrieval call that produced them.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class IndexEntry(BaseModel):
    """The queryable projection of one chunk."""

    document_id: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    ordinal: int = Field(..., ge=0)
    text: str
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def length(self) -> int:
        return len(self.text)


class ScoredEntry(BaseModel):
    """An index entry paired with its relevance score for one query."""

    entry: IndexEntry
    score: float

    model_config = ConfigDict(extra="forbid", frozen=True)


class IndexStats(BaseModel):
    documents: int = Field(..., ge=0)
    chunks: int = Field(..., ge=0)
    terms: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid")
