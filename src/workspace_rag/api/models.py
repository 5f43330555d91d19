"""
API Models

Pydantic models used for request/response validation across the chat,
file-event and index endpoints.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..retrieval.editor import EditorContext


# ---------------------------------------------------------------------
# Chat Models
# ---------------------------------------------------------------------

class ChatRequest(BaseModel):
    """A new question within a chat session."""

    query: str = Field(..., min_length=1)
    editor_context: Optional[EditorContext] = None

    model_config = ConfigDict(extra="forbid")


class OperationResult(BaseModel):
    """Standardized result of a mutating operation."""

    status: Literal["ok", "accepted", "ignored", "reset", "rebuilt"]
    count: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Ingestion Models
# ---------------------------------------------------------------------

class FileEventRequest(BaseModel):
    kind: Literal["created", "modified", "deleted"]
    path: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class FileEventBatch(BaseModel):
    events: List[FileEventRequest] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class RebuildRequest(BaseModel):
    """Rebuild request; omitting `source_roots` keeps the configured ones."""

    source_roots: Optional[List[str]] = None

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Index Models
# ---------------------------------------------------------------------

class SearchResult(BaseModel):
    document_id: str
    path: str
    ordinal: int = Field(..., ge=0)
    score: float
    text: str

    model_config = ConfigDict(extra="forbid")


class StatusResponse(BaseModel):
    index: Dict[str, int]
    scorer: str
    pipeline: Dict[str, Any]
    sessions: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid")
