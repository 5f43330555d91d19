"""
File Event Routes

Receives change notifications from the editor's file watcher. The service
does not register watches itself.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from ..ingestion.models import FileEvent
from ..service import RagService
from .dependencies import get_service
from .models import FileEventBatch, OperationResult

router = APIRouter(prefix="/files", tags=["files"])


@router.post(
    "/events",
    response_model=OperationResult,
    status_code=status.HTTP_202_ACCEPTED,
)
async def file_events(
    batch: FileEventBatch,
    service: Annotated[RagService, Depends(get_service)],
) -> OperationResult:
    accepted = 0
    for item in batch.events:
        if await service.notify_file_event(FileEvent(kind=item.kind, path=item.path)):
            accepted += 1
    return OperationResult(status="accepted", count=accepted)
