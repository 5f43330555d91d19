from workspace_rag.config import Settings
from workspace_rag.core.errors import (
    DocumentReadError,
    FailureKind,
    GenerationTimeout,
    IndexCorrupt,
    MalformedResponse,
    RagError,
    TransientTransportError,
)


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.scorer == "lexical"
    assert settings.chunk_size == 1000
    assert settings.chunk_overlap == 200
    assert ".git" in settings.excluded_dirs
    assert settings.include_patterns == []
    assert settings.min_relevance == 0.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RAG_CHUNK_SIZE", "512")
    monkeypatch.setenv("RAG_SCORER", "embedding")
    monkeypatch.setenv("RAG_SOURCE_ROOTS", '["/src/app", "/src/lib"]')

    settings = Settings(_env_file=None)

    assert settings.chunk_size == 512
    assert settings.scorer == "embedding"
    assert settings.source_roots == ["/src/app", "/src/lib"]


def test_error_taxonomy():
    assert issubclass(IndexCorrupt, RagError)
    assert issubclass(GenerationTimeout, TransientTransportError)
    assert GenerationTimeout("slow").kind.retryable
    assert not MalformedResponse("bad").kind.retryable

    error = DocumentReadError("/src/a.py", "permission denied")
    assert error.path == "/src/a.py"
    assert "permission denied" in str(error)


def test_failure_kinds_have_user_messages():
    for kind in FailureKind:
        assert kind.user_message
