"""
Error Taxonomy and Global Error Handling

This module defines the exception hierarchy shared by the indexing and
generation layers, and the FastAPI exception handlers that translate those
exceptions into deterministic responses.

Design Goals
------------
- One root (`RagError`) so callers can catch every domain failure at once
- Generation failures carry a `FailureKind` so the caller can decide
  whether to offer a retry
- Never leak internal exception details to clients
- Log full stack traces internally for debugging
"""

from __future__ import annotations

import enum
import logging
from typing import Dict, Any

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("rag.errors")


# ---------------------------------------------------------------------
# Index / Ingestion Errors
# ---------------------------------------------------------------------

class RagError(RuntimeError):
    """Base error for every failure raised by the assistant core."""

    code = "rag_error"
    status_code = 500


class IndexCorrupt(RagError):
    """The on-disk index cannot be opened; it must be rebuilt from scratch."""

    code = "index_corrupt"
    status_code = 503


class IndexWriteFailure(RagError):
    """A write to the index failed (disk full, locked database, ...)."""

    code = "index_write_failure"
    status_code = 503


class DocumentReadError(RagError):
    """A single document could not be read or chunked."""

    code = "document_read_error"
    status_code = 422

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class RebuildInProgress(RagError):
    """A full rebuild was requested while another one is running."""

    code = "rebuild_in_progress"
    status_code = 409


class IngestionPaused(RagError):
    """Ingestion is paused after a fatal storage failure."""

    code = "ingestion_paused"
    status_code = 503


class EmbeddingUnavailable(RagError):
    """The embedding service failed or answered with unusable vectors."""

    code = "embedding_unavailable"
    status_code = 503


# ---------------------------------------------------------------------
# Generation Errors
# ---------------------------------------------------------------------

class FailureKind(str, enum.Enum):
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    REFUSAL = "refusal"
    MALFORMED_RESPONSE = "malformed_response"

    @property
    def retryable(self) -> bool:
        return self in (FailureKind.TRANSPORT, FailureKind.TIMEOUT)

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self]


_USER_MESSAGES = {
    FailureKind.TRANSPORT: "The language model service could not be reached.",
    FailureKind.TIMEOUT: "The language model stopped responding.",
    FailureKind.REFUSAL: "The language model service rejected the request.",
    FailureKind.MALFORMED_RESPONSE: "The language model returned an unreadable response.",
}


class GenerationError(RagError):
    """Terminal failure of a generation request."""

    code = "generation_failed"
    status_code = 502
    kind = FailureKind.TRANSPORT

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "kind": self.kind.value,
            "retryable": self.kind.retryable,
            "detail": self.kind.user_message,
        }


class TransientTransportError(GenerationError):
    """Connection failure or 5xx answer; retried once before surfacing."""

    kind = FailureKind.TRANSPORT


class GenerationTimeout(TransientTransportError):
    """No token arrived within the idle timeout."""

    kind = FailureKind.TIMEOUT


class UpstreamRefusal(GenerationError):
    """The LLM service explicitly rejected the request."""

    kind = FailureKind.REFUSAL


class MalformedResponse(GenerationError):
    """The LLM service answered with something that is not the protocol."""

    kind = FailureKind.MALFORMED_RESPONSE


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

async def rag_error_handler(request: Request, exc: RagError) -> JSONResponse:
    """
    Translate a domain error into its deterministic JSON representation.

    Generation errors include their classification so the UI can decide
    whether to offer a retry.
    """
    logger.error(
        "Request %s %s failed: %s (%s)",
        request.method,
        request.url.path,
        exc.code,
        type(exc).__name__,
    )

    if isinstance(exc, GenerationError):
        payload = exc.to_payload()
    else:
        payload = {"error": exc.code, "detail": str(exc) or exc.code}

    return JSONResponse(status_code=exc.status_code, content=payload)


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Behavior
    --------
    - Logs the full exception stack trace for internal diagnostics.
    - Returns a generic 500 error to the client with no internal details.
    """
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    payload: Dict[str, Any] = {
        "error": "internal_server_error",
        "detail": "Internal server error",
    }

    return JSONResponse(
        status_code=500,
        content=payload,
    )
