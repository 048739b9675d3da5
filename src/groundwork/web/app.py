"""FastAPI application for Groundwork.

Exposes the question answering API. Run with::

    uvicorn groundwork.web.app:create_app --factory --port 8080
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from groundwork.core.config import Settings
from groundwork.core.errors import RetrievalError, SynthesisError
from groundwork.governance.audit import AuditLogger
from groundwork.rag.orchestrator import QueryOrchestrator
from groundwork.rag.pipeline import create_orchestrator
from groundwork.web.ask_router import router as ask_router

logger = logging.getLogger(__name__)


def _error_response(status_code: int, exc: RetrievalError | SynthesisError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": exc.to_payload()})


def create_app(
    settings: Settings | None = None,
    orchestrator: QueryOrchestrator | None = None,
    audit_logger: AuditLogger | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Uses the factory pattern so tests can create isolated app instances
    with mock dependencies.

    Args:
        settings: Application settings. Defaults to Settings().
        orchestrator: Optional pre-built QueryOrchestrator.
        audit_logger: Optional pre-built AuditLogger, used when the
            orchestrator is built here.

    Returns:
        A configured FastAPI instance.
    """
    if settings is None:
        settings = Settings()

    logging.getLogger("groundwork").setLevel(settings.log_level.upper())

    if orchestrator is None:
        orchestrator = create_orchestrator(settings, audit_logger=audit_logger)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.orchestrator.close()

    app = FastAPI(
        title="Groundwork",
        description="Cited answers over a per-tenant document index",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RetrievalError)
    async def _retrieval_error(request: Request, exc: RetrievalError) -> JSONResponse:
        logger.warning("Retrieval failed on %s: %s", request.url.path, exc.message)
        return _error_response(503, exc)

    @app.exception_handler(SynthesisError)
    async def _synthesis_error(request: Request, exc: SynthesisError) -> JSONResponse:
        logger.warning("Synthesis failed on %s: %s (%s)", request.url.path, exc.message, exc.code)
        return _error_response(502, exc)

    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.include_router(ask_router)

    return app
