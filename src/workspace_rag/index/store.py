"""
Index Store

Persistent inverted index backed by SQLite through SQLAlchemy's async ORM.

Key Properties
--------------
- Explicit lifecycle: `open()` / `close()` or `async with IndexStore(...)`
- Per-document atomicity: `upsert` and `delete` each run in one
  transaction, so a reader sees either all old or all new chunks of a
  document, never a mix, and a crash mid-write leaves no orphan entries
- Writers are serialized by the store; readers run concurrently against
  committed WAL snapshots
- Deterministic ranking: score desc, then shorter chunk, then path,
  then ordinal
- Corruption detected at open time is reported as `IndexCorrupt`
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, event, func, select
from sqlalchemy.exc import DatabaseError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..core.errors import IndexCorrupt, IndexWriteFailure
from ..ingestion.models import Chunk, Document
from .analyzer import term_frequencies
from .models import IndexEntry, IndexStats, ScoredEntry
from .schema import Base, ChunkRecord, DocumentRecord, Posting
from .scoring import BM25Scorer, Scorer

logger = logging.getLogger("rag.index")


# ---------------------------------------------------------------------
# Snapshot Reader
# ---------------------------------------------------------------------

class _SessionCorpus:
    """`CorpusView` over a session that is inside one read transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def chunk_stats(self) -> Tuple[int, float]:
        result = await self._session.execute(
            select(func.count(ChunkRecord.id), func.avg(ChunkRecord.token_count))
        )
        count, avg = result.one()
        return int(count or 0), float(avg or 0.0)

    async def document_frequencies(self, terms: Sequence[str]) -> Dict[str, int]:
        result = await self._session.execute(
            select(Posting.term, func.count(Posting.chunk_id))
            .where(Posting.term.in_(list(terms)))
            .group_by(Posting.term)
        )
        return {term: int(count) for term, count in result.all()}

    async def postings(self, terms: Sequence[str]) -> List[Tuple[int, str, int, int]]:
        result = await self._session.execute(
            select(Posting.chunk_id, Posting.term, Posting.tf, ChunkRecord.token_count)
            .join(ChunkRecord, ChunkRecord.id == Posting.chunk_id)
            .where(Posting.term.in_(list(terms)))
        )
        return [tuple(row) for row in result.all()]

    async def vectors(self) -> List[Tuple[int, bytes]]:
        result = await self._session.execute(
            select(ChunkRecord.id, ChunkRecord.vector).where(ChunkRecord.vector.is_not(None))
        )
        return [tuple(row) for row in result.all()]


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    """
    Enable WAL and make SQLAlchemy own transaction boundaries.

    pysqlite defers BEGIN until the first write, which would let a
    multi-statement search observe two different commits. Emitting BEGIN
    ourselves pins every transaction, reads included, to one snapshot.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


class IndexStore:
    """
    Persistent chunk index keyed by document id.

    Parameters
    ----------
    path : str
        SQLite database file.

    scorer : Optional[Scorer]
        Ranking strategy. Defaults to `BM25Scorer`.
    """

    def __init__(self, path: str, scorer: Optional[Scorer] = None) -> None:
        self.path = Path(path).expanduser()
        self.scorer: Scorer = scorer or BM25Scorer()

        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> None:
        """
        Open (or create) the index and verify its integrity.

        Raises
        ------
        IndexCorrupt
            If the file is not a readable SQLite index.
        IndexWriteFailure
            If the file cannot be opened or the schema cannot be created.
        """
        if self._engine is not None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(f"sqlite+aiosqlite:///{self.path}")
        _install_sqlite_pragmas(engine)

        try:
            async with engine.begin() as conn:
                result = await conn.exec_driver_sql("PRAGMA quick_check")
                verdict = result.scalar()
                if verdict != "ok":
                    raise IndexCorrupt(f"Index integrity check failed: {verdict}")
                await conn.run_sync(Base.metadata.create_all)
        except IndexCorrupt:
            await engine.dispose()
            raise
        except (OperationalError, sqlite3.OperationalError) as exc:
            await engine.dispose()
            raise IndexWriteFailure(f"Cannot open index at {self.path}: {exc}") from exc
        except (DatabaseError, sqlite3.DatabaseError) as exc:
            await engine.dispose()
            raise IndexCorrupt(f"Index at {self.path} is corrupt") from exc

        self._engine = engine
        self._sessions = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Opened index %s (scorer=%s)", self.path, self.scorer.name)

    async def close(self) -> None:
        """Wait for in-flight writes, then release every connection."""
        async with self._write_lock:
            if self._engine is None:
                return
            await self.scorer.aclose()
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
        logger.info("Closed index %s", self.path)

    async def destroy(self) -> None:
        """Close the store and delete its files so it can be rebuilt from scratch."""
        await self.close()
        for suffix in ("", "-wal", "-shm", "-journal"):
            Path(f"{self.path}{suffix}").unlink(missing_ok=True)
        logger.warning("Deleted index files at %s", self.path)

    async def __aenter__(self) -> "IndexStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("IndexStore is not open.")
        return self._sessions()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    async def _delete_document(session: AsyncSession, document_id: str) -> int:
        chunk_ids = select(ChunkRecord.id).where(ChunkRecord.document_id == document_id)
        await session.execute(delete(Posting).where(Posting.chunk_id.in_(chunk_ids)))
        result = await session.execute(
            delete(ChunkRecord).where(ChunkRecord.document_id == document_id)
        )
        await session.execute(delete(DocumentRecord).where(DocumentRecord.id == document_id))
        return result.rowcount or 0

    async def upsert(
        self,
        document_id: str,
        chunks: Sequence[Chunk],
        document: Optional[Document] = None,
        excluded: bool = False,
    ) -> int:
        """
        Replace every entry of `document_id` with `chunks`.

        Parameters
        ----------
        document_id : str
            Document identity.

        chunks : Sequence[Chunk]
            Complete chunk set of the document. May be empty (empty file).

        document : Optional[Document]
            Source document; its hash and timestamps are recorded so that
            unchanged files are skipped on restart.

        excluded : bool
            Record `document` as rejected by its content. No chunk may be
            given; the row only remembers the hash of the rejected content.

        Returns
        -------
        int
            Number of chunks written.

        Raises
        ------
        IndexWriteFailure
            If the transaction cannot be committed.
        """
        if any(c.document_id != document_id for c in chunks):
            raise ValueError("All chunks must belong to the upserted document.")
        if excluded and chunks:
            raise ValueError("An excluded document cannot have chunks.")

        # Encoded before taking the lock: may involve a network round-trip
        vectors = await self.scorer.encode([c.text for c in chunks])

        async with self._write_lock:
            try:
                async with self._session() as session, session.begin():
                    await self._delete_document(session, document_id)

                    session.add(
                        DocumentRecord(
                            id=document_id,
                            path=document.path if document else (chunks[0].path if chunks else document_id),
                            root=document.root if document else "",
                            content_hash=document.content_hash if document else "",
                            size_bytes=document.size_bytes if document else 0,
                            modified_at=document.modified_at if document else 0.0,
                            indexed_at=datetime.now(timezone.utc),
                            chunk_count=len(chunks),
                            excluded=excluded,
                        )
                    )
                    # Chunk rows reference the document row
                    await session.flush()

                    records: List[Tuple[ChunkRecord, Dict[str, int]]] = []
                    for i, c in enumerate(chunks):
                        frequencies = term_frequencies(c.text)
                        record = ChunkRecord(
                            document_id=document_id,
                            path=c.path,
                            ordinal=c.ordinal,
                            text=c.text,
                            start=c.start,
                            end=c.end,
                            length=len(c.text),
                            token_count=sum(frequencies.values()),
                            vector=vectors[i] if vectors else None,
                        )
                        session.add(record)
                        records.append((record, frequencies))

                    await session.flush()

                    session.add_all(
                        Posting(term=term, chunk_id=record.id, tf=tf)
                        for record, frequencies in records
                        for term, tf in frequencies.items()
                    )
            except SQLAlchemyError as exc:
                logger.critical("Index write failed for %s: %s", document_id, exc)
                raise IndexWriteFailure(
                    f"Failed to write {document_id}: {type(exc).__name__}"
                ) from exc

        return len(chunks)

    async def delete(self, document_id: str) -> int:
        """
        Remove every entry of `document_id`. Deleting an absent document
        is a no-op.

        Returns
        -------
        int
            Number of removed chunks.
        """
        async with self._write_lock:
            try:
                async with self._session() as session, session.begin():
                    return await self._delete_document(session, document_id)
            except SQLAlchemyError as exc:
                logger.critical("Index delete failed for %s: %s", document_id, exc)
                raise IndexWriteFailure(
                    f"Failed to delete {document_id}: {type(exc).__name__}"
                ) from exc

    async def clear(self) -> None:
        """Remove every document from the index."""
        async with self._write_lock:
            try:
                async with self._session() as session, session.begin():
                    await session.execute(delete(Posting))
                    await session.execute(delete(ChunkRecord))
                    await session.execute(delete(DocumentRecord))
            except SQLAlchemyError as exc:
                raise IndexWriteFailure(f"Failed to clear index: {type(exc).__name__}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(self, query_text: str, top_k: int) -> List[ScoredEntry]:
        """
        Return up to `top_k` entries ranked by relevance.

        Only entries with a positive score are returned; an empty index or
        a query without usable terms yields an empty list.
        """
        if top_k <= 0:
            return []

        prepared = await self.scorer.prepare(query_text)

        async with self._session() as session, session.begin():
            scores = await self.scorer.score(prepared, _SessionCorpus(session))
            candidates = {cid: s for cid, s in scores.items() if s > 0}
            if not candidates:
                return []

            result = await session.execute(
                select(ChunkRecord).where(ChunkRecord.id.in_(list(candidates)))
            )
            records = result.scalars().all()

        ranked = sorted(
            records,
            key=lambda r: (-candidates[r.id], r.length, r.path, r.ordinal),
        )[:top_k]

        return [
            ScoredEntry(
                entry=IndexEntry(
                    document_id=r.document_id,
                    path=r.path,
                    ordinal=r.ordinal,
                    text=r.text,
                    start=r.start,
                    end=r.end,
                ),
                score=candidates[r.id],
            )
            for r in ranked
        ]

    async def document_hash(self, document_id: str) -> Optional[str]:
        async with self._session() as session:
            result = await session.execute(
                select(DocumentRecord.content_hash).where(DocumentRecord.id == document_id)
            )
            return result.scalar_one_or_none()

    async def indexed_documents(self, include_excluded: bool = False) -> Dict[str, str]:
        """
        Return `document_id -> content hash` for every indexed document.

        Documents recorded as excluded by their content are only listed
        with `include_excluded=True`.
        """
        query = select(DocumentRecord.id, DocumentRecord.content_hash)
        if not include_excluded:
            query = query.where(DocumentRecord.excluded.is_(False))
        async with self._session() as session:
            result = await session.execute(query)
            return {doc_id: digest for doc_id, digest in result.all()}

    async def stats(self) -> IndexStats:
        async with self._session() as session, session.begin():
            documents = await session.scalar(
                select(func.count(DocumentRecord.id)).where(DocumentRecord.excluded.is_(False))
            )
            chunks = await session.scalar(select(func.count(ChunkRecord.id)))
            terms = await session.scalar(select(func.count(func.distinct(Posting.term))))
        return IndexStats(documents=documents or 0, chunks=chunks or 0, terms=terms or 0)
