"""
Assistant Service Facade

Wires the index, the ingestion pipeline, the retriever and the generation
orchestrator together and exposes the caller-facing operations:

- `submit_query(session_id, text, editor_context)` -> cancellable stream of answer fragments
- `notify_file_event(event)`
- `rebuild_index(source_roots)`
- `reset_session(session_id)`

Components receive explicit parameters; `from_settings` is the only place
that reads configuration.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .config import Settings
from .core.errors import IndexCorrupt
from .generation.client import GenerationOptions, LLMClient
from .generation.orchestrator import GenerationOrchestrator, GenerationRequest
from .index.embedder import Embedder
from .index.models import ScoredEntry
from .index.scoring import BM25Scorer, EmbeddingScorer, Scorer
from .index.store import IndexStore
from .ingestion.exclusion import PathExcluder
from .ingestion.models import FileEvent
from .ingestion.pipeline import IngestionPipeline
from .retrieval.editor import EditorContext, EditorContextReader
from .retrieval.retriever import Retriever
from .sessions.store import ConversationStore

logger = logging.getLogger("rag.service")


def build_scorer(settings: Settings) -> Scorer:
    if settings.scorer == "embedding":
        api_key = settings.embedding_api_key
        embedder = Embedder(
            base_url=settings.embedding_base_url,
            model=settings.embedding_model,
            protocol=settings.embedding_protocol,
            api_key=api_key.get_secret_value() if api_key else None,
        )
        return EmbeddingScorer(embedder)
    return BM25Scorer()


class RagService:
    def __init__(
        self,
        store: IndexStore,
        pipeline: IngestionPipeline,
        retriever: Retriever,
        orchestrator: GenerationOrchestrator,
        conversations: Optional[ConversationStore] = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.retriever = retriever
        self.orchestrator = orchestrator
        self.conversations = conversations or ConversationStore()
        self._active: Dict[str, GenerationRequest] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        llm_client: Optional[LLMClient] = None,
    ) -> "RagService":
        store = IndexStore(settings.index_path, scorer=build_scorer(settings))
        excluder = PathExcluder(
            excluded_dirs=settings.excluded_dirs,
            include_patterns=settings.include_patterns,
            max_file_size_bytes=settings.max_file_size_bytes,
        )
        pipeline = IngestionPipeline(
            store,
            settings.source_roots,
            excluder,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            worker_count=settings.worker_count,
            queue_capacity=settings.queue_capacity,
            debounce_seconds=settings.debounce_seconds,
            max_indexed_files=settings.max_indexed_files,
        )
        retriever = Retriever(
            store,
            top_k=settings.search_top_k,
            min_relevance=settings.min_relevance,
            editor_reader=EditorContextReader(excluder, lambda: pipeline.roots),
        )
        orchestrator = GenerationOrchestrator(
            llm_client or LLMClient(settings.llm_base_url, timeout=settings.idle_timeout_seconds),
            retriever,
            GenerationOptions(
                model=settings.chat_model,
                temperature=settings.temperature,
                top_k=settings.top_k,
                top_p=settings.top_p,
                max_output_tokens=settings.max_output_tokens,
            ),
            system_prompt=settings.system_prompt,
            context_budget=settings.context_budget_chars,
            prompt_budget=settings.prompt_budget_chars,
            history_turns=settings.history_turns,
            idle_timeout=settings.idle_timeout_seconds,
            retry_backoff=settings.retry_backoff_seconds,
        )
        return cls(store, pipeline, retriever, orchestrator)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, scan: bool = True) -> None:
        """
        Open the index, start the workers and reconcile the index with disk.

        A corrupt index is deleted and rebuilt from the source roots.
        """
        rebuild = False
        try:
            await self.store.open()
        except IndexCorrupt as exc:
            logger.error("Index is corrupt, rebuilding from scratch: %s", exc)
            await self.store.destroy()
            await self.store.open()
            rebuild = True

        self.pipeline.start()
        if scan or rebuild:
            await self.pipeline.scan(force=rebuild)

    async def close(self) -> None:
        for request in list(self._active.values()):
            await request.aclose()
        self._active.clear()
        await self.pipeline.stop()
        await self.store.close()

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        return lock

    async def submit_query(
        self,
        session_id: str,
        text: str,
        editor_context: Optional[EditorContext] = None,
    ) -> GenerationRequest:
        """
        Start answering `text` within a session.

        A previous request of the same session that is still streaming is
        cancelled first. Submissions of one session are serialized, so
        overlapping questions always cancel their predecessor. `editor_context`
        adds pinned files and the text around the caret to the retrieved set.
        """
        async with self._session_lock(session_id):
            previous = self._active.pop(session_id, None)
            if previous is not None:
                await previous.aclose()

            conversation = self.conversations.get(session_id)
            request = await self.orchestrator.submit(conversation, text, editor_context)
            self._active[session_id] = request
            return request

    async def cancel_query(self, session_id: str) -> bool:
        async with self._session_lock(session_id):
            request = self._active.pop(session_id, None)
            if request is None:
                return False
            await request.aclose()
            return True

    async def notify_file_event(self, event: FileEvent) -> bool:
        return await self.pipeline.notify_file_event(event)

    async def rebuild_index(self, source_roots: Optional[Sequence[str]] = None) -> int:
        return await self.pipeline.rebuild(source_roots)

    def resume_ingestion(self) -> bool:
        if not self.pipeline.paused:
            return False
        self.pipeline.resume()
        return True

    async def reset_session(self, session_id: str) -> None:
        await self.cancel_query(session_id)
        self.conversations.reset(session_id)

    async def search(self, text: str, k: int) -> List[ScoredEntry]:
        return await self.store.search(text, k)

    async def status(self) -> Dict[str, Any]:
        stats = await self.store.stats()
        return {
            "index": stats.model_dump(),
            "scorer": self.store.scorer.name,
            "pipeline": self.pipeline.stats(),
            "sessions": len(self.conversations),
        }
