"""
Document Chunker

Splits document text into overlapping segments sized for the index and for
the model context window.

Splitting prefers semantic boundaries (blank lines, line breaks, statement
ends, spaces) and falls back to hard character cuts when a segment has no
boundary within `chunk_size`. The output is a pure function of
`(text, chunk_size, overlap)`, so re-chunking unchanged content always
reproduces the same chunks.
"""

from __future__ import annotations

from typing import List, NamedTuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .models import Chunk, Document


SEPARATORS = ["\n\n", "\n", ". ", ";", " ", ""]


class Span(NamedTuple):
    start: int
    end: int
    text: str


def _build_splitter(chunk_size: int, overlap: int) -> RecursiveCharacterTextSplitter:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive.")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be in [0, chunk_size).")

    return RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=overlap,
        length_function=len,
        separators=SEPARATORS,
        keep_separator=True,
    )


def split_text(text: str, chunk_size: int, overlap: int) -> List[Span]:
    """
    Split `text` into ordered spans with character offsets.

    Each span's text is an exact substring of `text` starting at `start`.
    """
    splitter = _build_splitter(chunk_size, overlap)
    if not text.strip():
        return []

    spans: List[Span] = []
    cursor = 0
    for piece in splitter.split_text(text):
        start = text.find(piece, cursor)
        if start == -1:
            # Merged overlap can exceed `overlap`: take the last occurrence
            # before the expected position
            start = text.rfind(piece, 0, cursor + len(piece) - 1)
        spans.append(Span(start, start + len(piece), piece))
        cursor = max(start + 1, start + len(piece) - overlap)

    return spans


def chunk(document: Document, chunk_size: int, overlap: int) -> List[Chunk]:
    """Return the full, ordered chunk set for `document`."""
    return [
        Chunk(
            document_id=document.id,
            path=document.path,
            ordinal=ordinal,
            text=span.text,
            start=span.start,
            end=span.end,
        )
        for ordinal, span in enumerate(split_text(document.content, chunk_size, overlap))
    ]
