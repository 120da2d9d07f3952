"""Health check endpoints."""

import logging
from datetime import datetime

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from hr_payroll.api.dependencies import DbSession
from hr_payroll.models import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str
    engine_version: str
    approval_levels: int


class ReadinessResponse(BaseModel):
    status: str
    missing: list[str]


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check(request: Request, db: DbSession) -> HealthResponse:
    """Check API and database health."""
    db_status = "unhealthy"
    try:
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as e:
        logger.warning("Database health check failed: %s", e)

    state = request.app.state
    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=utcnow(),
        database=db_status,
        engine_version=state.settings.engine_version,
        approval_levels=len(state.chain),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request, response: Response) -> ReadinessResponse:
    """Ready once the collaborators payroll calculation needs are wired."""
    state = request.app.state
    missing = [
        name
        for name in ("session_factory", "provider", "directory")
        if getattr(state, name, None) is None
    ]
    if missing:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(status="not_ready", missing=missing)
    return ReadinessResponse(status="ready", missing=[])


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
