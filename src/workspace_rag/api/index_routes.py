"""
Index Routes

Direct access to the index: lexical/semantic search, status and rebuild.
"""

from __future__ import annotations

from typing import Annotated, List

from fastapi import APIRouter, Depends, Query

from ..service import RagService
from .dependencies import get_service
from .models import OperationResult, RebuildRequest, SearchResult, StatusResponse

router = APIRouter(prefix="/index", tags=["index"])


@router.get("/search", response_model=List[SearchResult])
async def search(
    service: Annotated[RagService, Depends(get_service)],
    q: str = Query(..., min_length=1),
    k: int = Query(10, ge=1, le=200),
) -> List[SearchResult]:
    hits = await service.search(q, k)
    return [
        SearchResult(
            document_id=hit.entry.document_id,
            path=hit.entry.path,
            ordinal=hit.entry.ordinal,
            score=hit.score,
            text=hit.entry.text,
        )
        for hit in hits
    ]


@router.get("/status", response_model=StatusResponse)
async def index_status(
    service: Annotated[RagService, Depends(get_service)],
) -> StatusResponse:
    return StatusResponse(**await service.status())


@router.post("/rebuild", response_model=OperationResult)
async def rebuild(
    req: RebuildRequest,
    service: Annotated[RagService, Depends(get_service)],
) -> OperationResult:
    """
    Re-index every file under the source roots.

    Returns 409 while another rebuild runs and 503 while ingestion is paused.
    """
    processed = await service.rebuild_index(req.source_roots)
    return OperationResult(status="rebuilt", count=processed)


@router.post("/resume", response_model=OperationResult)
async def resume(
    service: Annotated[RagService, Depends(get_service)],
) -> OperationResult:
    """Resume ingestion after a storage failure was resolved."""
    resumed = service.resume_ingestion()
    return OperationResult(status="ok" if resumed else "ignored")
