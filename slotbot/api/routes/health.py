"""
Health Check Endpoints

Liveness and readiness probes for load balancers and orchestration.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from slotbot.config import settings
from slotbot.infra.database import check_db_health
from slotbot.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "0.1.0"

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Health check response with dependency probes."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float] = None
    checks: dict[str, str]


async def _probe() -> dict[str, str]:
    """Run the dependency probes. Both degrade gracefully, so neither is fatal."""
    checks = {
        "database": "ok" if await check_db_health() else "failed",
        "redis": "ok" if await check_redis_health() else "degraded",
    }
    for name, result in checks.items():
        if result != "ok":
            logger.warning(f"Health check: {name} {result}")
    return checks


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness with dependency probes",
    description="Returns 200 while the process is running; dependency state is reported in `checks`.",
)
async def health() -> HealthResponse:
    checks = await _probe()
    return HealthResponse(
        status="healthy" if all(v == "ok" for v in checks.values()) else "degraded",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
    )


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness probe",
    description="Returns 503 when the database is unreachable. Redis is optional.",
    responses={
        200: {"description": "Ready to take traffic"},
        503: {"description": "Database unavailable"},
    },
)
async def ready() -> HealthResponse:
    checks = await _probe()
    response = HealthResponse(
        status="ready" if checks["database"] == "ok" else "not_ready",
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
    )

    if checks["database"] != "ok":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response
