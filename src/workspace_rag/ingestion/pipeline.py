"""
Ingestion Pipeline

Keeps the index consistent with the files under a set of source roots.

Producers
---------
- `scan()` walks the roots, compares content hashes with the ones recorded
  in the index, and enqueues work for new, changed and vanished files.
- `notify_file_event()` turns live create/modify/delete notifications into
  tasks.

Consumers
---------
A fixed pool of asyncio workers pulls tasks from the coalescing queue,
applies the exclusion rules, reads and chunks the file and writes the
result to the index.

Failure Semantics
-----------------
- A read or chunking error skips the document and leaves its previous
  index entries untouched.
- `IndexWriteFailure` pauses every worker until `resume()` is called; the
  failed task is kept unless a newer one superseded it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.errors import (
    DocumentReadError,
    EmbeddingUnavailable,
    IndexWriteFailure,
    IngestionPaused,
    RebuildInProgress,
)
from ..index.store import IndexStore
from . import chunker
from .exclusion import Excluder
from .models import Document, FileEvent, IndexingTask, TaskKind, content_hash
from .queue import CoalescingTaskQueue

logger = logging.getLogger("rag.ingestion")

HASH_BLOCK_SIZE = 8192

EVENT_TASK_KINDS = {
    "created": TaskKind.INDEX,
    "modified": TaskKind.UPDATE,
    "deleted": TaskKind.DELETE,
}


@dataclass
class PipelineStats:
    indexed: int = 0
    unchanged: int = 0
    excluded: int = 0
    deleted: int = 0
    failed: int = 0


def _file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def document_id_for(path: Path) -> str:
    return Path(os.path.abspath(path)).as_posix()


class IngestionPipeline:
    """
    Producer/consumer pipeline feeding an `IndexStore`.

    Parameters
    ----------
    store : IndexStore
        Open index store.

    source_roots : Sequence[str]
        Directories whose files are indexed.

    excluder : Excluder
        Indexability rules.

    chunk_size, chunk_overlap : int
        Chunking parameters, in characters.

    worker_count : int
        Size of the worker pool.

    queue_capacity : int
        Maximum number of distinct pending documents.

    debounce_seconds : float
        Quiet period before a changed document is indexed.

    max_indexed_files : int
        Upper bound on files enqueued by one scan.
    """

    def __init__(
        self,
        store: IndexStore,
        source_roots: Sequence[str],
        excluder: Excluder,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        worker_count: int = 2,
        queue_capacity: int = 1000,
        debounce_seconds: float = 0.5,
        max_indexed_files: int = 5000,
    ) -> None:
        self.store = store
        self.excluder = excluder
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.worker_count = worker_count
        self.max_indexed_files = max_indexed_files
        self.roots: List[Path] = [Path(document_id_for(Path(r).expanduser())) for r in source_roots]

        self.queue = CoalescingTaskQueue(queue_capacity, debounce_seconds)
        self.counters = PipelineStats()
        self.fatal_error: Optional[IndexWriteFailure] = None

        self._workers: List[asyncio.Task] = []
        self._running = asyncio.Event()
        self._running.set()
        self._halted = asyncio.Event()
        self._scan_lock = asyncio.Lock()
        self._rebuilding = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    @property
    def rebuilding(self) -> bool:
        return self._rebuilding

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"indexing-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info("Ingestion pipeline started with %d workers", self.worker_count)

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Ingestion pipeline stopped")

    async def wait_idle(self) -> None:
        """Wait until every queued task has been processed."""
        await self.queue.join()

    def resume(self) -> None:
        """Resume ingestion after an operator resolved a storage failure."""
        if self.fatal_error is not None:
            logger.warning("Resuming ingestion after: %s", self.fatal_error)
        self.fatal_error = None
        self._halted.clear()
        self._running.set()

    async def _drain(self) -> None:
        """
        Wait until the queue is empty.

        Raises
        ------
        IngestionPaused
            If a storage failure pauses the workers first.
        """
        joined = asyncio.ensure_future(self.queue.join())
        halted = asyncio.ensure_future(self._halted.wait())
        try:
            done, _ = await asyncio.wait({joined, halted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            joined.cancel()
            halted.cancel()
        if joined not in done:
            raise IngestionPaused(f"Ingestion paused while draining: {self.fatal_error}")

    def _pause(self, exc: IndexWriteFailure) -> None:
        self.fatal_error = exc
        self._running.clear()
        self._halted.set()
        logger.critical("Ingestion paused until operator intervention: %s", exc)

    def stats(self) -> Dict[str, object]:
        return {
            **asdict(self.counters),
            "pending": self.queue.qsize(),
            "in_flight": self.queue.in_flight(),
            "coalesced": self.queue.coalesced,
            "paused": self.paused,
            "rebuilding": self._rebuilding,
            "fatal_error": str(self.fatal_error) if self.fatal_error else None,
        }

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def _root_for(self, path: Path) -> Optional[Path]:
        for root in self.roots:
            if path == root or path.is_relative_to(root):
                return root
        return None

    async def notify_file_event(self, event: FileEvent) -> bool:
        """
        Enqueue the task matching a file-system notification.

        A deleted directory also removes every document recorded under it.

        Returns
        -------
        bool
            False when the path is outside every source root, or when a
            created/modified path is a directory.
        """
        path = Path(document_id_for(Path(event.path).expanduser()))
        root = self._root_for(path)
        if root is None:
            logger.debug("Ignoring %s event outside source roots: %s", event.kind, path)
            return False

        kind = EVENT_TASK_KINDS[event.kind]
        if kind is not TaskKind.DELETE and path.is_dir():
            return False

        if kind is TaskKind.DELETE:
            recorded = await self.store.indexed_documents(include_excluded=True)
            for document_id in sorted(recorded):
                if Path(document_id).is_relative_to(path) and document_id != path.as_posix():
                    await self.queue.put(
                        IndexingTask(
                            kind=TaskKind.DELETE,
                            document_id=document_id,
                            path=document_id,
                            root=root.as_posix(),
                            origin="watcher",
                        )
                    )

        await self.queue.put(
            IndexingTask(
                kind=kind,
                document_id=path.as_posix(),
                path=path.as_posix(),
                root=root.as_posix(),
                origin="watcher",
            )
        )
        return True

    def _walk(self, root: Path, limit: int) -> Tuple[List[Path], bool]:
        """
        List indexable candidates under `root`, stopping at `limit` files.

        Hidden entries directly under the root are skipped. Files are sized
        with `stat` so oversized ones are never opened.
        """
        found: List[Path] = []
        for dirpath, dirnames, filenames in os.walk(root):
            base = Path(dirpath)
            top_level = base == root
            dirnames[:] = sorted(
                d for d in dirnames
                if not (top_level and d.startswith("."))
                and not self.excluder.excludes_dir(base / d)
            )
            for name in sorted(filenames):
                if top_level and name.startswith("."):
                    continue
                path = base / name
                try:
                    size = path.stat().st_size
                except OSError as exc:
                    logger.debug("Cannot stat %s during scan: %s", path, exc)
                    continue
                if self.excluder.excludes_path(path.relative_to(root), size) is not None:
                    continue
                if len(found) >= limit:
                    return found, True
                found.append(path)
        return found, False

    async def scan(self, roots: Optional[Sequence[Path]] = None, force: bool = False) -> int:
        """
        Walk the source roots and enqueue work for every difference with the index.

        Parameters
        ----------
        roots : Optional[Sequence[Path]]
            Roots to scan. Defaults to every configured root.

        force : bool
            Enqueue every file regardless of its recorded hash.

        Returns
        -------
        int
            Number of enqueued tasks.
        """
        async with self._scan_lock:
            roots = list(roots) if roots is not None else list(self.roots)
            indexed = await self.store.indexed_documents(include_excluded=True)
            enqueued = 0
            remaining = self.max_indexed_files
            truncated = False
            seen = set()

            for root in roots:
                if not root.is_dir():
                    logger.warning("Source root %s is not a directory", root)
                    continue

                paths, hit_limit = await asyncio.to_thread(self._walk, root, remaining)
                remaining -= len(paths)
                truncated = truncated or hit_limit

                for path in paths:
                    document_id = document_id_for(path)
                    seen.add(document_id)
                    previous = indexed.get(document_id)

                    if not force and previous is not None:
                        try:
                            digest = await asyncio.to_thread(_file_digest, path)
                        except OSError as exc:
                            logger.warning("Cannot hash %s during scan: %s", path, exc)
                            continue
                        if digest == previous:
                            continue

                    # Blocks while the queue is saturated
                    await self.queue.put(
                        IndexingTask(
                            kind=TaskKind.UPDATE if previous is not None else TaskKind.INDEX,
                            document_id=document_id,
                            path=document_id,
                            root=root.as_posix(),
                            origin="scan",
                        )
                    )
                    enqueued += 1

            if truncated:
                logger.warning(
                    "Maximum indexable files limit (%d) reached; "
                    "editing or creating files will still trigger their indexing.",
                    self.max_indexed_files,
                )
            else:
                for document_id in indexed:
                    if document_id in seen:
                        continue
                    path = Path(document_id)
                    if not any(path.is_relative_to(root) for root in roots):
                        continue
                    await self.queue.put(
                        IndexingTask(
                            kind=TaskKind.DELETE,
                            document_id=document_id,
                            path=document_id,
                            origin="scan",
                        )
                    )
                    enqueued += 1

            logger.info("Scan of %d root(s) enqueued %d task(s)", len(roots), enqueued)
            return enqueued

    async def rebuild(self, source_roots: Optional[Sequence[str]] = None) -> int:
        """
        Discard the whole index and re-index every file under the roots.

        Only one rebuild may run at a time. Searches stay available while it
        runs and see partially rebuilt, but never corrupted, results.

        Raises
        ------
        RebuildInProgress
            If another rebuild is running.
        IngestionPaused
            If ingestion is paused after a storage failure.
        """
        if self._rebuilding:
            raise RebuildInProgress("An index rebuild is already running.")
        if self.paused:
            raise IngestionPaused(f"Ingestion is paused: {self.fatal_error}")

        self._rebuilding = True
        try:
            if source_roots is not None:
                self.roots = [Path(document_id_for(Path(r).expanduser())) for r in source_roots]

            dropped = await self.queue.clear()
            await self._drain()
            await self.store.clear()
            logger.info("Rebuilding index (%d pending task(s) dropped)", dropped)

            enqueued = await self.scan(force=True)
            await self._drain()
            logger.info("Index rebuild finished: %d file(s) processed", enqueued)
            return enqueued
        finally:
            self._rebuilding = False

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    async def _worker(self, number: int) -> None:
        logger.debug("Indexing worker %d started", number)
        while True:
            await self._running.wait()
            task = await self.queue.get()
            try:
                if self.paused:
                    await self.queue.requeue(task)
                    continue
                await self._process(task)
            except (DocumentReadError, EmbeddingUnavailable) as exc:
                self.counters.failed += 1
                logger.warning("Skipping %s: %s", task.path, exc)
            except IndexWriteFailure as exc:
                self._pause(exc)
                await self.queue.requeue(task)
            except Exception:
                self.counters.failed += 1
                logger.exception("Unexpected error while indexing %s", task.path)
            finally:
                await self.queue.task_done(task.document_id)

    async def _remove(self, document_id: str) -> None:
        if await self.store.delete(document_id):
            self.counters.deleted += 1
            logger.info("Removed %s from the index", document_id)

    async def _process(self, task: IndexingTask) -> None:
        if task.kind is TaskKind.DELETE:
            await self._remove(task.document_id)
            return

        path = Path(task.path)
        root = Path(task.root) if task.root else self._root_for(path)
        relative = path.relative_to(root) if root is not None else path

        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            await self._remove(task.document_id)
            return
        except OSError as exc:
            raise DocumentReadError(task.path, str(exc)) from exc

        reason = self.excluder.excludes_path(relative, stat.st_size)
        if reason is not None:
            self.counters.excluded += 1
            logger.debug("Excluded %s: %s", path, reason)
            await self._remove(task.document_id)
            return

        try:
            raw = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            await self._remove(task.document_id)
            return
        except OSError as exc:
            raise DocumentReadError(task.path, str(exc)) from exc

        digest = content_hash(raw)
        if await self.store.document_hash(task.document_id) == digest:
            self.counters.unchanged += 1
            return

        document = Document(
            id=task.document_id,
            path=task.path,
            root=root.as_posix() if root is not None else "",
            content="",
            content_hash=digest,
            size_bytes=len(raw),
            modified_at=stat.st_mtime,
        )

        reason = self.excluder.excludes_content(path, raw)
        if reason is not None:
            self.counters.excluded += 1
            logger.debug("Excluded %s: %s", path, reason)
            # Remembered so an unchanged file is not read again
            await self.store.upsert(task.document_id, [], document, excluded=True)
            return

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DocumentReadError(task.path, "content is not valid UTF-8") from exc

        document = document.model_copy(update={"content": text})

        try:
            chunks = await asyncio.to_thread(
                chunker.chunk, document, self.chunk_size, self.chunk_overlap
            )
        except ValueError as exc:
            raise DocumentReadError(task.path, f"chunking failed: {exc}") from exc

        await self.store.upsert(task.document_id, chunks, document)
        self.counters.indexed += 1
        logger.debug("Indexed %s (%d chunks)", task.path, len(chunks))
