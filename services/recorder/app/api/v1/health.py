"""Health check endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.container import ServiceContainer
from ...core.logging import get_logger
from ...models.database import utcnow
from ...models.schemas import HealthResponse
from ..deps import get_container

logger = get_logger(__name__)
router = APIRouter()


@router.get("/live", response_model=HealthResponse)
async def liveness_probe(container: ServiceContainer = Depends(get_container)):
    """Liveness probe endpoint."""
    return HealthResponse(
        status="healthy",
        service=container.config.service_name,
        version=container.config.service_version,
        timestamp=utcnow(),
    )


@router.get("/ready", response_model=HealthResponse)
async def readiness_probe(container: ServiceContainer = Depends(get_container)):
    """Readiness probe endpoint."""
    database_ok = await container.db.health_check()
    if not database_ok:
        logger.error("Readiness check failed", database="unhealthy")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not ready",
        )

    return HealthResponse(
        status="healthy",
        service=container.config.service_name,
        version=container.config.service_version,
        timestamp=utcnow(),
        details={"database": "healthy"},
    )
