"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from usdc_payroll.api.dependencies import ServicesDep
from usdc_payroll.api.rate_limit import limiter
from usdc_payroll.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str
    gateway: str
    background_tasks: int


async def database_reachable(services: Services) -> bool:
    try:
        await services.db.ping()
    except Exception as exc:
        logger.warning("Database health check failed: %s", exc)
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
@limiter.exempt
async def health_check(services: ServicesDep) -> HealthResponse:
    """Database reachability, gateway backend and in-flight background work."""
    healthy = await database_reachable(services)
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc),
        database="healthy" if healthy else "unhealthy",
        gateway=services.settings.gateway_backend,
        background_tasks=len(services.supervisor),
    )


@router.get("/ready", responses={503: {"description": "Database unreachable"}})
@limiter.exempt
async def readiness_check(services: ServicesDep) -> JSONResponse:
    """Accept traffic only while the ledger store answers."""
    if not await database_reachable(services):
        return JSONResponse({"status": "not_ready"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return JSONResponse({"status": "ready"})


@router.get("/live")
@limiter.exempt
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
