"""
Context Retriever

Turns a natural-language query into a ranked, size-budgeted context.

The retriever asks the index for a generous number of candidates, drops
everything under the relevance floor, then accepts candidates in rank order
until the next one would overflow the budget. Budgets are counted in
characters of chunk text.

Context supplied by the editor (pinned files, the window around the caret)
is merged in after the ranked chunks, within the same budget.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..core.errors import EmbeddingUnavailable
from ..index.models import ScoredEntry
from ..index.store import IndexStore
from .editor import MIN_CONTEXT_CHARS, EditorContext, EditorContextReader

logger = logging.getLogger("rag.retrieval")


class RetrievedContext(BaseModel):
    """Immutable, ordered result of one retrieval call."""

    items: Tuple[ScoredEntry, ...] = ()

    model_config = ConfigDict(frozen=True)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def total_chars(self) -> int:
        return sum(item.entry.length for item in self.items)


class Retriever:
    """
    Parameters
    ----------
    store : IndexStore
        Index to search.

    top_k : int
        Number of candidates asked from the index.

    min_relevance : float
        Relevance floor for index hits.

    editor_reader : Optional[EditorContextReader]
        Reads pinned files and focused windows. Without one, editor
        context is ignored.
    """

    def __init__(
        self,
        store: IndexStore,
        top_k: int = 50,
        min_relevance: float = 0.0,
        editor_reader: Optional[EditorContextReader] = None,
    ) -> None:
        self.store = store
        self.top_k = top_k
        self.min_relevance = min_relevance
        self.editor_reader = editor_reader

    def _is_relevant(self, hit: ScoredEntry) -> bool:
        return hit.score > 0 and hit.score >= self.min_relevance

    async def retrieve(
        self,
        query_text: str,
        budget: Optional[int],
        editor_context: Optional[EditorContext] = None,
    ) -> RetrievedContext:
        """
        Return the best chunks for `query_text` whose total size fits `budget`.

        `budget=None` means unbounded. Selection stops at the first chunk that
        would overflow, so the ranked part of the result is always a prefix of
        the ranked, relevance-filtered candidates.

        Editor entries (pinned files, then the focused window) are appended
        after the ranked chunks when their text is not already present. They
        are clipped to the remaining budget and dropped when the clipped text
        is too short to be useful.
        """
        try:
            hits = await self.store.search(query_text, self.top_k)
        except EmbeddingUnavailable as exc:
            logger.warning("Query embedding failed, answering without context: %s", exc)
            hits = []

        accepted: List[ScoredEntry] = []
        used = 0
        for hit in hits:
            if not self._is_relevant(hit):
                continue
            size = hit.entry.length
            if budget is not None and used + size > budget:
                break
            accepted.append(hit)
            used += size
        ranked = len(accepted)

        if editor_context is not None and self.editor_reader is not None:
            seen = {hit.entry.text for hit in accepted}
            for extra in await self.editor_reader.collect(editor_context):
                if extra.entry.text in seen:
                    continue
                if budget is not None and used + extra.entry.length > budget:
                    extra = _clip(extra, budget - used)
                    if extra is None:
                        continue
                accepted.append(extra)
                seen.add(extra.entry.text)
                used += extra.entry.length

        logger.debug(
            "Retrieved %d/%d chunks and %d editor entries (%d chars) for query of %d chars",
            ranked,
            len(hits),
            len(accepted) - ranked,
            used,
            len(query_text),
        )
        return RetrievedContext(items=tuple(accepted))


def _clip(hit: ScoredEntry, size: int) -> Optional[ScoredEntry]:
    text = hit.entry.text[:max(0, size)]
    if len(text.strip()) <= MIN_CONTEXT_CHARS:
        return None
    entry = hit.entry.model_copy(update={"text": text, "end": hit.entry.start + len(text)})
    return hit.model_copy(update={"entry": entry})
