"""
Application Entry Point

This module defines the FastAPI application, registers all routers,
configures global exception handling and owns the service lifecycle.

Design Goals
------------
- Deterministic startup: the index is opened and reconciled with the
  source roots before the first request is served
- Centralized router registration
- Global exception safety net
- Test-friendly via create_app(service=...)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from . import __version__
from .config import Settings, settings as default_settings
from .core.errors import RagError, rag_error_handler, unhandled_exception_handler
from .core.logging import configure_logging
from .service import RagService

from .api import (
    chat_routes,
    file_routes,
    health_routes,
    index_routes,
)


logger = logging.getLogger("rag.app")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    service: Optional[RagService] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    settings : Optional[Settings]
        Configuration; defaults to the environment-derived settings.

    service : Optional[RagService]
        Prebuilt service (tests inject one wired to temporary paths and a
        mock LLM transport). Built from `settings` when omitted.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    settings = settings or default_settings
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        rag = service or RagService.from_settings(settings)
        logger.info("Starting workspace-rag (scorer=%s)", settings.scorer)
        await rag.start()
        app.state.service = rag
        try:
            yield
        finally:
            logger.info("Shutting down workspace-rag")
            await rag.close()

    app = FastAPI(
        title="workspace-rag",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(RagError, rag_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(chat_routes.router)
    app.include_router(file_routes.router)
    app.include_router(index_routes.router)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn)
# ---------------------------------------------------------------------

app = create_app()
