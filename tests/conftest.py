import time

import pytest

from workspace_rag.index.store import IndexStore
from workspace_rag.ingestion import chunker
from workspace_rag.ingestion.models import Chunk, Document, content_hash


def make_document(path: str, content: str, root: str = "/workspace") -> Document:
    raw = content.encode("utf-8")
    return Document(
        id=path,
        path=path,
        root=root,
        content=content,
        content_hash=content_hash(raw),
        size_bytes=len(raw),
        modified_at=time.time(),
    )


def make_chunks(document: Document, chunk_size: int = 1000, overlap: int = 200) -> list[Chunk]:
    return chunker.chunk(document, chunk_size, overlap)


@pytest.fixture
async def store(tmp_path):
    index = IndexStore(str(tmp_path / "index.db"))
    await index.open()
    yield index
    await index.close()


@pytest.fixture
async def index_text(store):
    """Upsert `content` as document `path` and return the document."""

    async def _index(path: str, content: str, chunk_size: int = 1000, overlap: int = 200) -> Document:
        document = make_document(path, content)
        await store.upsert(document.id, make_chunks(document, chunk_size, overlap), document)
        return document

    return _index


@pytest.fixture
def document_factory():
    return make_document
