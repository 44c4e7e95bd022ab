"""
FastAPI application entry point.

Serves the SQL remote store over HTTP for the engine's HttpRemoteStore.
Run locally: uvicorn triage.main:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from asgi_correlation_id import CorrelationIdMiddleware
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from triage.api.v1.routes import health, newsletters, queue
from triage.core.config import Settings, get_settings
from triage.core.errors import (
    NotAuthenticatedError,
    NotFoundError,
    RemoteReadError,
    RemoteWriteError,
    SupersededError,
    TriageError,
    ValidationError,
)
from triage.core.logging import get_logger, setup_logging
from triage.services.sql_store import SqlRemoteStore

logger = get_logger(__name__)

_STATUS_BY_ERROR: list[tuple[type[TriageError], int]] = [
    (NotAuthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, 422),
    (SupersededError, status.HTTP_409_CONFLICT),
    (RemoteWriteError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (RemoteReadError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


async def triage_error_handler(request: Request, exc: TriageError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    log = logger.error if status_code >= 500 else logger.info
    log("request_failed", path=request.url.path, status=status_code, error=str(exc))
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(store: SqlRemoteStore | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    owns_store = store is None
    store = store or SqlRemoteStore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown events."""
        setup_logging(settings)
        logger.info(
            "app_starting",
            environment=settings.app_env,
            database=settings.database_url[:30] + "...",
        )
        await store.create_schema()

        yield

        if owns_store:
            await store.dispose()
        logger.info("app_shutting_down")

    app = FastAPI(
        title="Newsletter Triage",
        description="Remote store for the newsletter triage engine",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.app_env != "production" else None,
        redoc_url="/redoc" if settings.app_env != "production" else None,
    )
    app.state.store = store

    # ── Middleware ──────────────────────────────────────────────
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Errors ─────────────────────────────────────────────────
    app.add_exception_handler(TriageError, triage_error_handler)

    # ── Routes ─────────────────────────────────────────────────
    app.include_router(health.router)
    app.include_router(newsletters.router, prefix="/api/v1")
    app.include_router(queue.router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {
            "service": "Newsletter Triage",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/healthz/",
        }

    return app


app = create_app()
