"""
HTTP Binding Tests

A real service is wired to a temporary workspace and index; only the LLM
service is replaced by an `httpx.MockTransport`.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from workspace_rag.config import Settings
from workspace_rag.generation.client import LLMClient
from workspace_rag.main import create_app
from workspace_rag.service import RagService


def ollama_handler(request: httpx.Request) -> httpx.Response:
    prompt = json.loads(request.content)["prompt"]
    if "forbidden topic" in prompt:
        return httpx.Response(400, json={"error": "refused"})
    events = [
        {"response": "Use ", "done": False},
        {"response": "parse_config.", "done": False},
        {"response": "", "done": True},
    ]
    return httpx.Response(200, content="".join(json.dumps(e) + "\n" for e in events))


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    (root / "config.py").write_text("def parse_config(path):\n    return load_yaml(path)\n")
    (root / "README.md").write_text("Scheduler service documentation.\n")
    return root


@pytest.fixture
def service(tmp_path, workspace):
    settings = Settings(
        _env_file=None,
        index_path=str(tmp_path / "index.db"),
        source_roots=[str(workspace)],
        worker_count=1,
        debounce_seconds=0.0,
        retry_backoff_seconds=0.0,
    )
    client = LLMClient("http://ollama.test", transport=httpx.MockTransport(ollama_handler))
    return RagService.from_settings(settings, llm_client=client)


@pytest.fixture
def client(service):
    app = create_app(service=service)
    with TestClient(app) as c:
        yield c


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "index_open": True}


def test_rebuild_then_search(client, workspace):
    resp = client.post("/index/rebuild", json={})
    assert resp.status_code == 200
    assert resp.json() == {"status": "rebuilt", "count": 2}

    resp = client.get("/index/search", params={"q": "parse config", "k": 5})
    assert resp.status_code == 200
    results = resp.json()
    assert [r["path"] for r in results] == [(workspace / "config.py").as_posix()]
    assert results[0]["score"] > 0


def test_status_reports_index_and_pipeline(client):
    client.post("/index/rebuild", json={})

    resp = client.get("/index/status")

    assert resp.status_code == 200
    body = resp.json()
    assert body["index"]["documents"] == 2
    assert body["scorer"] == "lexical"
    assert body["pipeline"]["paused"] is False


def test_chat_streams_answer_and_records_turns(client, service):
    resp = client.post("/chat/s1", json={"query": "How do I load the config?"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text == "Use parse_config."

    turns = service.conversations.get("s1").history()
    assert [(t.role, t.text) for t in turns] == [
        ("user", "How do I load the config?"),
        ("assistant", "Use parse_config."),
    ]


def test_chat_refusal_is_classified(client, service):
    resp = client.post("/chat/s2", json={"query": "tell me about the forbidden topic"})

    assert resp.status_code == 502
    assert resp.json() == {
        "error": "generation_failed",
        "kind": "refusal",
        "retryable": False,
        "detail": "The language model service rejected the request.",
    }
    assert len(service.conversations.get("s2")) == 0


def test_reset_session(client, service):
    client.post("/chat/s1", json={"query": "hello"})

    resp = client.delete("/chat/s1")

    assert resp.json() == {"status": "reset", "count": None}
    assert len(service.conversations.get("s1")) == 0


def test_cancel_without_running_request(client):
    resp = client.post("/chat/unknown/cancel")

    assert resp.json()["status"] == "ignored"


def test_file_events(client, workspace, tmp_path):
    new_file = workspace / "notes.txt"
    new_file.write_text("fresh notes")
    outside = tmp_path / "outside.txt"
    outside.write_text("not watched")

    resp = client.post(
        "/files/events",
        json={
            "events": [
                {"kind": "created", "path": str(new_file)},
                {"kind": "modified", "path": str(outside)},
            ]
        },
    )

    assert resp.status_code == 202
    assert resp.json() == {"status": "accepted", "count": 1}


def test_unknown_fields_are_rejected(client):
    resp = client.post("/chat/s1", json={"query": "hi", "temperature": 2})

    assert resp.status_code == 422


def test_chat_includes_editor_context(tmp_path, workspace):
    prompts = []

    def handler(request: httpx.Request) -> httpx.Response:
        prompts.append(json.loads(request.content)["prompt"])
        return ollama_handler(request)

    settings = Settings(
        _env_file=None,
        index_path=str(tmp_path / "index.db"),
        source_roots=[str(workspace)],
        worker_count=1,
        debounce_seconds=0.0,
        retry_backoff_seconds=0.0,
    )
    llm = LLMClient("http://ollama.test", transport=httpx.MockTransport(handler))
    app = create_app(service=RagService.from_settings(settings, llm_client=llm))
    draft = "Unsaved draft: the scheduler retries three times before giving up."

    with TestClient(app) as c:
        resp = c.post(
            "/chat/s1",
            json={
                "query": "What does the scheduler do?",
                "editor_context": {
                    "focused_text": draft,
                    "pinned_paths": [str(workspace / "config.py")],
                },
            },
        )

    assert resp.status_code == 200
    assert draft in prompts[0]
    assert "load_yaml(path)" in prompts[0]


def test_editor_context_rejects_unknown_fields(client):
    resp = client.post(
        "/chat/s1",
        json={"query": "hi", "editor_context": {"selection": "abc"}},
    )

    assert resp.status_code == 422
