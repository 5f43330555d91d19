"""
Editor Context

Context the editor sends along with a question, merged into the retrieved
set by the retriever:

- pinned files, read whole (subject to the exclusion rules and a size
  ceiling, and only under the source roots)
- a focused window of the active document around the caret, unless that
  document is itself pinned

Entries shorter than `MIN_CONTEXT_CHARS` characters carry too little
signal and are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..index.models import IndexEntry, ScoredEntry
from ..ingestion.exclusion import Excluder
from ..ingestion.pipeline import document_id_for

logger = logging.getLogger("rag.retrieval.editor")

WINDOW_CHARS = 5000
MAX_PINNED_FILE_BYTES = 200 * 1024
MIN_CONTEXT_CHARS = 30

# Editor entries are chosen by the user, not ranked
EDITOR_SCORE = 1.0
UNTITLED = "untitled"


class EditorContext(BaseModel):
    """What the editor shows the user when the question is asked."""

    focused_path: Optional[str] = None
    focused_text: Optional[str] = None
    caret_offset: Optional[int] = Field(default=None, ge=0)
    pinned_paths: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", frozen=True)


def focused_window(
    text: str,
    caret_offset: Optional[int],
    width: int = WINDOW_CHARS,
) -> Tuple[int, str]:
    """Return `(start, window)`: `width` characters centred on the caret."""
    caret = len(text) // 2 if caret_offset is None else min(caret_offset, len(text))
    start = max(0, caret - width // 2)
    end = min(len(text), caret + width // 2)
    return start, text[start:end]


def _normalize(raw_path: str) -> Path:
    return Path(document_id_for(Path(raw_path).expanduser()))


def _entry(path: str, text: str, start: int = 0) -> ScoredEntry:
    return ScoredEntry(
        entry=IndexEntry(
            document_id=path,
            path=path,
            ordinal=0,
            text=text,
            start=start,
            end=start + len(text),
        ),
        score=EDITOR_SCORE,
    )


class EditorContextReader:
    """
    Turns an `EditorContext` into entries for the prompt.

    Parameters
    ----------
    excluder : Excluder
        Same rules as the indexer, so pinned binaries or excluded
        directories never reach the model.

    roots : Callable[[], Sequence[Path]]
        Current source roots; pinned files elsewhere are ignored.
    """

    def __init__(
        self,
        excluder: Excluder,
        roots: Callable[[], Sequence[Path]],
        max_file_bytes: int = MAX_PINNED_FILE_BYTES,
    ) -> None:
        self.excluder = excluder
        self.roots = roots
        self.max_file_bytes = max_file_bytes

    def _root_for(self, path: Path) -> Optional[Path]:
        for root in self.roots():
            if path.is_relative_to(root):
                return root
        return None

    def _read_pinned(self, path: Path) -> Optional[str]:
        root = self._root_for(path)
        if root is None:
            logger.warning("Ignoring pinned file outside source roots: %s", path)
            return None

        try:
            size = path.stat().st_size
            reason = self.excluder.excludes_path(path.relative_to(root), size)
            if reason is None and size > self.max_file_bytes:
                reason = f"larger than {self.max_file_bytes} bytes"
            if reason is not None:
                logger.info("Ignoring pinned file %s: %s", path, reason)
                return None
            raw = path.read_bytes()
        except OSError as exc:
            logger.warning("Cannot read pinned file %s: %s", path, exc)
            return None

        reason = self.excluder.excludes_content(path, raw)
        if reason is not None:
            logger.info("Ignoring pinned file %s: %s", path, reason)
            return None
        return raw.decode("utf-8", errors="replace")

    async def collect(self, context: EditorContext) -> List[ScoredEntry]:
        """Return pinned files first, then the focused window."""
        entries: List[ScoredEntry] = []
        pinned = set()

        for raw_path in context.pinned_paths:
            path = _normalize(raw_path)
            if path.as_posix() in pinned:
                continue
            pinned.add(path.as_posix())
            text = await asyncio.to_thread(self._read_pinned, path)
            if text is not None and len(text.strip()) > MIN_CONTEXT_CHARS:
                entries.append(_entry(path.as_posix(), text))

        if context.focused_text:
            path = _normalize(context.focused_path).as_posix() if context.focused_path else UNTITLED
            if path not in pinned:
                start, window = focused_window(context.focused_text, context.caret_offset)
                if len(window.strip()) > MIN_CONTEXT_CHARS:
                    entries.append(_entry(path, window, start))

        return entries
