"""
System Routes: Health Check and Monitoring Endpoints

- GET /health: database and Redis status
- GET /metrics: Prometheus exposition
"""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from api.dependencies import get_database, get_metrics, get_redis
from api.schemas import HealthCheckResponse
from config.settings import settings
from core.exceptions import GatewayException
from infrastructure.database import DatabaseManager
from infrastructure.monitoring import MetricsCollector
from infrastructure.redis_client import RedisClient

router = APIRouter(tags=["System"])


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check endpoint",
    description="Service health with dependency status",
)
async def health_check(
    db: DatabaseManager = Depends(get_database),
    redis: RedisClient = Depends(get_redis),
) -> HealthCheckResponse:
    """
    Report database and Redis connectivity.

    The service is "degraded" rather than down when Redis is unreachable:
    analyses are still served, uncached.
    """
    dependencies: Dict[str, str] = {}

    try:
        await db.health_check()
        dependencies["database"] = "healthy"
    except GatewayException as e:
        dependencies["database"] = f"unhealthy: {e.message}"

    dependencies["redis"] = "healthy" if await redis.ping() else "unhealthy"

    overall_status = (
        "healthy" if all(v == "healthy" for v in dependencies.values()) else "degraded"
    )

    return HealthCheckResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        version=settings.app_version,
        dependencies=dependencies,
    )


@router.get(
    "/metrics",
    summary="Metrics (Prometheus format)",
    description="Export metrics in Prometheus format for monitoring systems",
)
async def get_system_metrics(
    metrics: MetricsCollector = Depends(get_metrics),
) -> Response:
    return Response(content=metrics.export_metrics(), media_type=metrics.get_content_type())
