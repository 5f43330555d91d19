"""
Chat Routes

Streaming conversational endpoint used by the editor UI.

- `POST /chat/{session_id}` streams the answer as plain text. Failures that
  happen before the first fragment are returned as a classified JSON error
  (see `core.errors`); failures after it end the stream with a short
  human-readable notice, since the status line was already sent.
- `POST /chat/{session_id}/cancel` stops the running answer of a session.
- `DELETE /chat/{session_id}` starts a new conversation.
"""

from __future__ import annotations

from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..core.errors import GenerationError
from ..service import RagService
from .dependencies import get_service
from .models import ChatRequest, OperationResult

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post(
    "/{session_id}",
    summary="Ask a question and stream the answer",
    response_class=StreamingResponse,
)
async def chat(
    session_id: str,
    req: ChatRequest,
    service: Annotated[RagService, Depends(get_service)],
) -> StreamingResponse:
    request = await service.submit_query(session_id, req.query, req.editor_context)

    try:
        first = await request.__anext__()
    except StopAsyncIteration:
        first = ""

    async def body() -> AsyncIterator[str]:
        try:
            if first:
                yield first
            async for fragment in request:
                yield fragment
        except GenerationError as exc:
            yield f"\n\n[{exc.kind.user_message}]"
        finally:
            # Client disconnects land here as well
            await request.aclose()

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")


@router.post("/{session_id}/cancel", response_model=OperationResult)
async def cancel(
    session_id: str,
    service: Annotated[RagService, Depends(get_service)],
) -> OperationResult:
    cancelled = await service.cancel_query(session_id)
    return OperationResult(status="ok" if cancelled else "ignored")


@router.delete("/{session_id}", response_model=OperationResult)
async def reset(
    session_id: str,
    service: Annotated[RagService, Depends(get_service)],
) -> OperationResult:
    await service.reset_session(session_id)
    return OperationResult(status="reset")
