"""
ragstream Application Entry Point

This module defines the FastAPI application instance, registers all routers,
configures global exception handling, and provides a test-friendly application
factory.

Lifecycle
---------
- The SessionManager is created with the app and owned by ``app.state``.
- Startup creates the pgvector table when that backend is selected and
  launches the periodic session cleanup task.
- The background ingestion worker is started by the first queued job.
- Shutdown stops both tasks, clears the sessions and flushes the vector store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .config import Settings, settings as default_settings
from .core.errors import register_exception_handlers
from .embeddings.queue import EmbeddingQueue
from .sessions.store import SessionManager

from .api import (
    document_routes,
    generation_routes,
    health_routes,
    query_routes,
    session_routes,
)
from .api.dependencies import get_vector_store


logger = logging.getLogger("ragstream.app")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    session_manager: Optional[SessionManager] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    settings : Optional[Settings]
        Overrides the module-level settings for logging, session TTL and
        cleanup interval.

    session_manager : Optional[SessionManager]
        Pre-built manager, e.g. one with a fake clock in tests.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    cfg = settings or default_settings

    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    sessions = session_manager or SessionManager(ttl_seconds=cfg.session_ttl_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting ragstream (vector store: %s)", cfg.vector_store_backend)
        if cfg.vector_store_backend == "pgvector":
            from .db.session import init_models

            await init_models(cfg.database_url)

        cleanup = asyncio.create_task(
            sessions.run_cleanup_loop(cfg.session_cleanup_interval)
        )
        try:
            yield
        finally:
            worker = app.state.ingestion_worker
            for task in (cleanup, worker):
                if task is None:
                    continue
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            sessions.close()

            # Only flush a store that was actually created.
            if get_vector_store.cache_info().currsize:
                await get_vector_store().close()

            logger.info("Shutting down ragstream")

    app = FastAPI(
        title="ragstream",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.session_manager = sessions
    app.state.ingestion_queue = EmbeddingQueue()
    app.state.ingestion_worker = None

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    register_exception_handlers(app)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(session_routes.router)
    app.include_router(document_routes.router)
    app.include_router(query_routes.router)
    app.include_router(generation_routes.router)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn/Gunicorn)
# ---------------------------------------------------------------------

app = create_app()
