"""
SQLAlchemy Models

Defines the on-disk schema of the index:
- Document metadata (content hash, last indexed time) used to skip
  unchanged files on restart
- Chunks, the persisted projection of each document segment
- Postings, the inverted index from analyzed term to chunk
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ---------------------------------------------------------------------
# Document Metadata
# ---------------------------------------------------------------------

class DocumentRecord(Base):
    """
    One indexed workspace file.

    A row exists for every document whose current content has been
    indexed, including empty documents that produced no chunk. Files
    rejected by their content (binary) keep a row flagged `excluded` so an
    unchanged file is not read again on the next scan.
    """
    __tablename__ = "document"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    root: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modified_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    indexed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# ---------------------------------------------------------------------
# Chunk Model
# ---------------------------------------------------------------------

class ChunkRecord(Base):
    """
    Persisted chunk of a document.

    `vector` is only populated when a dense scorer is configured.
    """
    __tablename__ = "chunk"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("document.id", ondelete="CASCADE"),
        nullable=False,
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    start: Mapped[int] = mapped_column(Integer, nullable=False)
    end: Mapped[int] = mapped_column(Integer, nullable=False)
    length: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    vector: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)

    __table_args__ = (
        UniqueConstraint("document_id", "ordinal", name="uq_chunk_document_ordinal"),
        Index("idx_chunk_document", "document_id"),
    )


# ---------------------------------------------------------------------
# Inverted Index
# ---------------------------------------------------------------------

class Posting(Base):
    """Occurrences of one analyzed term in one chunk."""
    __tablename__ = "posting"

    term: Mapped[str] = mapped_column(String(64), primary_key=True)
    chunk_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chunk.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tf: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_posting_chunk", "chunk_id"),
    )
