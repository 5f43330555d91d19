"""
Ranking Strategies

A `Scorer` is the pluggable ranking capability of the index store. It has
two jobs:

1. `encode` - produce the per-chunk representation persisted at upsert
   time (None when the strategy needs nothing beyond the postings)
2. `prepare` + `score` - turn a query into scores for candidate chunks,
   reading the corpus through a `CorpusView` bound to one read snapshot

Two variants are provided: `BM25Scorer` over the inverted index (default)
and `EmbeddingScorer` using cosine similarity of dense vectors.
"""

from __future__ import annotations

import math
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from .analyzer import query_terms
from .embedder import Embedder


@runtime_checkable
class CorpusView(Protocol):
    """Read access to one committed snapshot of the index."""

    async def chunk_stats(self) -> Tuple[int, float]:
        """Return (number of chunks, average token count per chunk)."""
        ...

    async def document_frequencies(self, terms: Sequence[str]) -> Dict[str, int]:
        ...

    async def postings(self, terms: Sequence[str]) -> List[Tuple[int, str, int, int]]:
        """Return (chunk id, term, term frequency, chunk token count) rows."""
        ...

    async def vectors(self) -> List[Tuple[int, bytes]]:
        ...


@runtime_checkable
class Scorer(Protocol):
    name: str

    async def encode(self, texts: Sequence[str]) -> Optional[List[bytes]]:
        ...

    async def prepare(self, query: str) -> Any:
        ...

    async def score(self, prepared: Any, corpus: CorpusView) -> Dict[int, float]:
        ...

    async def aclose(self) -> None:
        """Release network resources; the scorer stays usable afterwards."""
        ...


# ---------------------------------------------------------------------
# Lexical ranking
# ---------------------------------------------------------------------

class BM25Scorer:
    """
    Okapi BM25 over the posting table.

    Chunks are the scored unit, so corpus size and document frequencies
    are counted in chunks. The IDF variant is always positive, hence every
    chunk sharing a term with the query scores above zero.
    """

    name = "lexical"

    def __init__(self, k1: float = 1.2, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b

    async def encode(self, texts: Sequence[str]) -> Optional[List[bytes]]:
        return None

    async def aclose(self) -> None:
        return None

    async def prepare(self, query: str) -> List[str]:
        return query_terms(query)

    async def score(self, prepared: List[str], corpus: CorpusView) -> Dict[int, float]:
        if not prepared:
            return {}

        total, avg_len = await corpus.chunk_stats()
        if total == 0:
            return {}
        avg_len = avg_len or 1.0

        frequencies = await corpus.document_frequencies(prepared)
        scores: Dict[int, float] = defaultdict(float)

        for chunk_id, term, tf, length in await corpus.postings(prepared):
            df = frequencies.get(term, 0)
            idf = math.log(1.0 + (total - df + 0.5) / (df + 0.5))
            norm = tf * (self.k1 + 1) / (tf + self.k1 * (1 - self.b + self.b * length / avg_len))
            scores[chunk_id] += idf * norm

        return dict(scores)


# ---------------------------------------------------------------------
# Dense ranking
# ---------------------------------------------------------------------

def _to_unit_vector(values: Sequence[float]) -> np.ndarray:
    vector = np.asarray(values, dtype="float32")
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


class EmbeddingScorer:
    """
    Cosine similarity between the query embedding and stored chunk vectors.

    Vectors are L2-normalised float32 arrays persisted as raw bytes. Chunks
    indexed without a vector, or with a different dimensionality, are not
    candidates.
    """

    name = "embedding"

    def __init__(self, embedder: Embedder) -> None:
        self.embedder = embedder

    async def aclose(self) -> None:
        await self.embedder.aclose()

    async def encode(self, texts: Sequence[str]) -> Optional[List[bytes]]:
        if not texts:
            return []
        embeddings = await self.embedder.embed(texts)
        return [_to_unit_vector(e).tobytes() for e in embeddings]

    async def prepare(self, query: str) -> Optional[np.ndarray]:
        if not query.strip():
            return None
        [embedding] = await self.embedder.embed([query])
        return _to_unit_vector(embedding)

    async def score(self, prepared: Optional[np.ndarray], corpus: CorpusView) -> Dict[int, float]:
        if prepared is None:
            return {}

        ids: List[int] = []
        rows: List[np.ndarray] = []
        for chunk_id, blob in await corpus.vectors():
            vector = np.frombuffer(blob, dtype="float32")
            if vector.shape != prepared.shape:
                continue
            ids.append(chunk_id)
            rows.append(vector)

        if not rows:
            return {}

        similarities = np.vstack(rows) @ prepared
        return {chunk_id: float(sim) for chunk_id, sim in zip(ids, similarities)}
