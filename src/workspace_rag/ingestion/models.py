"""
Ingestion Data Models

Canonical representations of a workspace document, the chunks derived from
it, file-system notifications and the units of pending indexing work.

Chunks are owned by exactly one document and are regenerated wholesale
whenever the document changes; they are never patched in place.
"""

from __future__ import annotations

import enum
import hashlib
import time
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class Document(BaseModel):
    """
    A successfully read workspace file.

    The document id is the normalised absolute path of the file.
    """

    id: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    root: str = Field(..., description="Source root this document belongs to.")
    content: str
    content_hash: str = Field(..., min_length=1)
    size_bytes: int = Field(..., ge=0)
    modified_at: float = Field(..., description="File mtime (epoch seconds).")

    model_config = ConfigDict(extra="forbid", frozen=True)


class Chunk(BaseModel):
    """
    A bounded text segment of a document.

    Identity is `(document_id, ordinal)`; `start`/`end` are character
    offsets into the decoded document text, overlap included.
    """

    document_id: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    ordinal: int = Field(..., ge=0)
    text: str = Field(..., min_length=1)
    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def length(self) -> int:
        return len(self.text)


class FileEvent(BaseModel):
    """A live notification coming from the editor's file watcher."""

    kind: Literal["created", "modified", "deleted"]
    path: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid", frozen=True)


class TaskKind(str, enum.Enum):
    INDEX = "index"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class IndexingTask:
    """Pending index/update/delete work for a single document."""

    kind: TaskKind
    document_id: str
    path: str
    root: str = ""
    enqueued_at: float = field(default_factory=time.monotonic)

    # Source of the task, for tracing
    origin: str = "unknown"
