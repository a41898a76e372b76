"""Health check endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from seedflow.core.database import get_db
from seedflow.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: Literal["ok", "degraded", "unhealthy"]
    database: Literal["connected", "disconnected"] | None = None
    degraded_sources: list[str] = Field(default_factory=list)
    degraded_targets: list[str] = Field(default_factory=list)
    emergency_stop: bool = False


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness check, degraded when any source or target is unhealthy.

    Args:
        request: Incoming request (used to reach the orchestrator on app state).

    Returns:
        Health status response.
    """
    logger.debug("health.check_started")
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        return HealthResponse(status="ok")

    sources = orchestrator.collection.degraded_sources()
    targets = orchestrator.distribution.degraded_targets()
    stopped = orchestrator.emergency_stopped
    status: Literal["ok", "degraded"] = "degraded" if sources or targets or stopped else "ok"
    return HealthResponse(
        status=status,
        degraded_sources=sources,
        degraded_targets=targets,
        emergency_stop=stopped,
    )


@router.get("/health/ready", response_model=HealthResponse)
async def readiness_check(
    db: AsyncSession = Depends(get_db),
) -> HealthResponse:
    """Readiness check including database connectivity.

    Args:
        db: Database session dependency.

    Returns:
        Health status with database state.
    """
    logger.debug("health.readiness_check_started")

    try:
        await db.execute(text("SELECT 1"))
        logger.info("health.database_connected")
        return HealthResponse(status="ok", database="connected")
    except Exception as e:
        logger.error(
            "health.database_disconnected",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return HealthResponse(status="unhealthy", database="disconnected")
