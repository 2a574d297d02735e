"""
Health Check Endpoints
======================
Health and readiness probes for monitoring.
"""

from typing import Dict

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel
from sqlalchemy import text
import structlog

from shared.config import settings
from shared.models import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


async def _database_status(request: Request) -> str:
    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return "down"
    return "up"


async def _cache_status(request: Request) -> str:
    try:
        await request.app.state.cache.get("health")
    except Exception as e:
        logger.warning("Cache health check failed", error=str(e))
        return "down"
    return "up"


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    services = {
        "api_gateway": "up",
        "database": await _database_status(request),
        "cache": await _cache_status(request),
    }
    return HealthResponse(
        status="healthy" if all(v == "up" for v in services.values()) else "degraded",
        timestamp=utcnow().isoformat(),
        version=settings.app_version,
        services=services,
    )


@router.get("/ready")
async def readiness_check(request: Request) -> dict:
    """Ready once the datastore answers."""
    return {"ready": await _database_status(request) == "up"}


@router.get("/live")
async def liveness_check() -> Response:
    return Response(status_code=200)
