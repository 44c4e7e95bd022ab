"""Health check endpoint, used by the platform healthcheck and monitoring."""

from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from triage.api.v1.deps import AppSettings, Store
from triage.core.logging import get_logger
from triage.schemas.schemas import HealthResponse

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/healthz/", response_model=HealthResponse)
async def health_check(settings: AppSettings, store: Store) -> HealthResponse:
    database = "connected"
    try:
        async with store.session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("health_db_ping_failed", error=str(e))
        database = "unavailable"
    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        environment=settings.app_env,
        database=database,
    )
