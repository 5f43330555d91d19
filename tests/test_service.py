"""
Service Facade Tests

Lifecycle behaviour of `RagService`: corrupt-index recovery, startup
reconciliation and session handling.
"""

import asyncio

import httpx
import pytest

from workspace_rag.config import Settings
from workspace_rag.generation.client import LLMClient
from workspace_rag.generation.orchestrator import GenerationState
from workspace_rag.service import RagService


def ollama_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b'{"response": "hi", "done": true}\n')


def make_service(tmp_path, root, handler=ollama_handler) -> RagService:
    settings = Settings(
        _env_file=None,
        index_path=str(tmp_path / "index.db"),
        source_roots=[str(root)],
        worker_count=1,
        debounce_seconds=0.0,
        retry_backoff_seconds=0.0,
    )
    client = LLMClient("http://ollama.test", transport=httpx.MockTransport(handler))
    return RagService.from_settings(settings, llm_client=client)


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    (root / "main.py").write_text("def entry_point():\n    run_server()\n")
    return root


@pytest.mark.asyncio
async def test_startup_indexes_workspace(tmp_path, workspace):
    service = make_service(tmp_path, workspace)
    await service.start()
    await service.pipeline.wait_idle()

    hits = await service.search("entry point", 5)
    await service.close()

    assert [h.entry.path for h in hits] == [(workspace / "main.py").as_posix()]


@pytest.mark.asyncio
async def test_corrupt_index_is_rebuilt_on_start(tmp_path, workspace):
    (tmp_path / "index.db").write_bytes(b"corrupted bytes" * 500)

    service = make_service(tmp_path, workspace)
    await service.start()
    await service.pipeline.wait_idle()

    status = await service.status()
    await service.close()

    assert status["index"]["documents"] == 1


@pytest.mark.asyncio
async def test_cancelled_query_leaves_no_turns(tmp_path, workspace):
    service = make_service(tmp_path, workspace)
    await service.start(scan=False)

    first = await service.submit_query("s1", "first")
    first.cancel()
    second = await service.submit_query("s1", "second")
    answer = "".join([f async for f in second])
    await service.close()

    assert first.state is GenerationState.CANCELLED
    assert answer == "hi"
    assert [t.text for t in service.conversations.get("s1").history()] == ["second", "hi"]


@pytest.mark.asyncio
async def test_reset_session_clears_history(tmp_path, workspace):
    service = make_service(tmp_path, workspace)
    await service.start(scan=False)

    request = await service.submit_query("s1", "hello")
    await request.wait()
    await service.reset_session("s1")
    await service.close()

    assert len(service.conversations.get("s1")) == 0


@pytest.mark.asyncio
async def test_close_stops_workers(tmp_path, workspace):
    service = make_service(tmp_path, workspace)
    await service.start(scan=False)

    await service.close()
    await asyncio.sleep(0)

    assert not service.store.is_open
    assert service.pipeline._workers == []


@pytest.mark.asyncio
async def test_overlapping_questions_cancel_the_earlier_one(tmp_path, workspace, monkeypatch):
    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.2)
        return httpx.Response(200, content=b'{"response": "late", "done": true}\n')

    service = make_service(tmp_path, workspace, handler=slow_handler)
    await service.start(scan=False)

    retrieve = service.retriever.retrieve

    async def slow_retrieve(*args, **kwargs):
        await asyncio.sleep(0.05)
        return await retrieve(*args, **kwargs)

    monkeypatch.setattr(service.retriever, "retrieve", slow_retrieve)

    first, second = await asyncio.gather(
        service.submit_query("s1", "q1"),
        service.submit_query("s1", "q2"),
    )
    await second.wait()
    await service.close()

    assert first.state is GenerationState.CANCELLED
    assert second.state is GenerationState.COMPLETED
    assert [t.text for t in service.conversations.get("s1").history()] == ["q2", "late"]
