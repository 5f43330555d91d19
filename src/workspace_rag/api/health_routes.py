from fastapi import APIRouter, Depends
from typing import Annotated

from ..service import RagService
from .dependencies import get_service

router = APIRouter(tags=["health"])


@router.get("/health")
def health(service: Annotated[RagService, Depends(get_service)]):
    return {
        "status": "degraded" if service.pipeline.paused else "ok",
        "index_open": service.store.is_open,
    }
