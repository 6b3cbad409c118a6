"""
API Dependencies: FastAPI Dependency Injection Helpers

Thin accessors resolving components from the container, the admin-key
guard for operator endpoints, and the per-client rate limit on the analysis
endpoints.
"""

import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, Response, status
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter

from config.settings import settings
from container import container
from infrastructure.database import DatabaseManager
from infrastructure.monitoring import MetricsCollector
from infrastructure.redis_client import RedisClient
from optimization.cache_manager import ResultCache
from orchestration.analysis_orchestrator import AnalysisOrchestrator
from services.analytics_service import AnalyticsRecorder
from services.balance_ledger import BalanceLedger

ADMIN_KEY_HEADER = "X-Admin-Key"


def get_orchestrator() -> AnalysisOrchestrator:
    return container.orchestrator()


def get_ledger() -> BalanceLedger:
    return container.ledger()


def get_analytics() -> AnalyticsRecorder:
    return container.analytics()


def get_cache() -> ResultCache:
    return container.cache()


def get_database() -> DatabaseManager:
    return container.database()


def get_redis() -> RedisClient:
    return container.redis()


def get_metrics() -> MetricsCollector:
    return container.metrics()


async def require_admin_key(
    x_admin_key: Optional[str] = Header(None, alias=ADMIN_KEY_HEADER),
) -> None:
    """
    Guard for operator endpoints.

    Requests are rejected when no admin key is configured, so a deployment
    without one exposes no administration surface.
    """
    configured = container.config().api.admin_api_key
    if configured is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin access not configured"
        )

    if not x_admin_key or not secrets.compare_digest(
        x_admin_key.encode("utf-8"), configured.get_secret_value().encode("utf-8")
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


_analysis_limiter = RateLimiter(
    times=settings.api.rate_limit_times,
    seconds=settings.api.rate_limit_seconds,
)


async def rate_limit(request: Request, response: Response) -> None:
    """Per-client limit on the analysis endpoints; skipped while the limiter is not initialized."""
    if FastAPILimiter.redis is None:
        return
    await _analysis_limiter(request, response)


__all__ = [
    "ADMIN_KEY_HEADER",
    "get_orchestrator",
    "get_ledger",
    "get_analytics",
    "get_cache",
    "get_database",
    "get_redis",
    "get_metrics",
    "require_admin_key",
    "rate_limit",
]
