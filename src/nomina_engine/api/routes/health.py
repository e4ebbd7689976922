"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from nomina_engine.api.dependencies import AppSettings, DbSession, Provider
from nomina_engine.models import PayrollPeriod

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response.

    ``calculations_in_progress`` counts periods currently holding a
    calculation claim; a value that never drops usually means a worker
    died mid-run.
    """

    status: str
    timestamp: datetime
    database: str
    pac_provider: str
    calculations_in_progress: int | None = None
    version: str


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(db: DbSession, settings: AppSettings, provider: Provider) -> HealthResponse:
    """Report database reachability, the configured PAC and open calculation claims."""
    in_progress = None
    try:
        in_progress = await db.scalar(
            select(func.count())
            .select_from(PayrollPeriod)
            .where(PayrollPeriod.calculation_lock.is_not(None))
        )
    except SQLAlchemyError as e:
        logger.warning("Database health check failed: %s", e)

    db_ok = in_progress is not None
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        timestamp=datetime.now(timezone.utc),
        database="healthy" if db_ok else "unhealthy",
        pac_provider=provider.provider_name,
        calculations_in_progress=in_progress,
        version=settings.engine_version,
    )


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
