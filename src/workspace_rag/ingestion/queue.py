"""
Coalescing task queue for indexing work.

One pending task per document id: enqueueing a task for a document that
already has a pending task replaces it in place (keeping its position), so
a burst of saves collapses into one indexing operation on the latest file
state. A document is handed to at most one worker at a time, and a task is
only released once its debounce window has elapsed without a newer event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Optional, Set

from .models import IndexingTask

logger = logging.getLogger("rag.ingestion.queue")


class CoalescingTaskQueue:
    """
    Bounded, deduplicating task queue.

    Parameters
    ----------
    capacity : int
        Maximum number of distinct pending documents. `put` blocks while the
        queue is full; replacing an already pending task never blocks.

    debounce_seconds : float
        Quiet period a document must observe after its latest enqueue before
        a worker may take it.
    """

    def __init__(self, capacity: int = 1000, debounce_seconds: float = 0.0) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive.")
        self.capacity = capacity
        self.debounce_seconds = debounce_seconds

        self._pending: "OrderedDict[str, IndexingTask]" = OrderedDict()
        self._ready_at: Dict[str, float] = {}
        self._in_flight: Set[str] = set()
        self._cond = asyncio.Condition()

        self.coalesced = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def qsize(self) -> int:
        return len(self._pending)

    def in_flight(self) -> int:
        return len(self._in_flight)

    def full(self) -> bool:
        return len(self._pending) >= self.capacity

    def pending_task(self, document_id: str) -> Optional[IndexingTask]:
        return self._pending.get(document_id)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def _store(self, task: IndexingTask) -> None:
        loop = asyncio.get_running_loop()
        self._pending[task.document_id] = task
        self._ready_at[task.document_id] = loop.time() + self.debounce_seconds
        self._cond.notify_all()

    async def put(self, task: IndexingTask) -> bool:
        """
        Enqueue `task`, blocking while the queue is saturated.

        Returns
        -------
        bool
            True when the task superseded a pending task for the same document.
        """
        async with self._cond:
            while True:
                if task.document_id in self._pending:
                    self._store(task)
                    self.coalesced += 1
                    logger.debug("Coalesced %s task for %s", task.kind.value, task.path)
                    return True

                if len(self._pending) < self.capacity:
                    self._store(task)
                    return False

                await self._cond.wait()

    async def requeue(self, task: IndexingTask) -> bool:
        """
        Put a task back unless a newer one for the same document is pending.

        Capacity is not enforced: the task already held a slot.
        """
        async with self._cond:
            if task.document_id in self._pending:
                return False
            self._store(task)
            return True

    async def clear(self) -> int:
        """Drop every pending task. In-flight tasks are unaffected."""
        async with self._cond:
            dropped = len(self._pending)
            self._pending.clear()
            self._ready_at.clear()
            self._cond.notify_all()
            return dropped

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def _take_ready(self, now: float) -> "tuple[Optional[IndexingTask], Optional[float]]":
        next_ready: Optional[float] = None
        for document_id in self._pending:
            if document_id in self._in_flight:
                continue
            ready_at = self._ready_at[document_id]
            if ready_at <= now:
                task = self._pending.pop(document_id)
                del self._ready_at[document_id]
                self._in_flight.add(document_id)
                return task, None
            next_ready = ready_at if next_ready is None else min(next_ready, ready_at)
        return None, next_ready

    async def get(self) -> IndexingTask:
        """
        Take the oldest ready task whose document is not being processed.

        The caller must call `task_done(task.document_id)` when finished.
        """
        loop = asyncio.get_running_loop()
        async with self._cond:
            while True:
                task, next_ready = self._take_ready(loop.time())
                if task is not None:
                    # A slot was freed for blocked producers
                    self._cond.notify_all()
                    return task

                timeout = None if next_ready is None else max(0.0, next_ready - loop.time())
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout)
                except asyncio.TimeoutError:
                    pass

    async def task_done(self, document_id: str) -> None:
        async with self._cond:
            self._in_flight.discard(document_id)
            self._cond.notify_all()

    async def join(self) -> None:
        """Wait until nothing is pending or in flight."""
        async with self._cond:
            await self._cond.wait_for(lambda: not self._pending and not self._in_flight)
