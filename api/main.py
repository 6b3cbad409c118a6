"""
Main FastAPI application: middleware, lifespan and router registration.
"""

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi_limiter import FastAPILimiter
from starlette.middleware.base import BaseHTTPMiddleware

from api.exceptions import add_exception_handlers
from api.routes import analysis, analytics, balance, cache, system
from config.settings import settings
from container import container, container_manager
from infrastructure.monitoring import configure_structlog, get_logger

configure_structlog(settings.monitoring.log_level, settings.monitoring.log_format)
logger = get_logger(__name__)

# ============================================================================
# MIDDLEWARE STACK
# ============================================================================


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID for correlation across logs."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One structured log event per request."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            request_id=getattr(request.state, "request_id", None),
        )
        return response


# ============================================================================
# FASTAPI APPLICATION INITIALIZATION
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open connections on startup; drain background work and close them on shutdown."""
    if settings.is_production and settings.upstream.api_key is None:
        raise RuntimeError("UPSTREAM_API_KEY is required in production")

    await container_manager.initialize()
    logger.info("container_initialized", redis_available=container_manager.redis_available)

    if container_manager.redis_available:
        await FastAPILimiter.init(container.redis().client)
        logger.info("rate_limiter_initialized")
    else:
        logger.warning("rate_limiter_disabled", reason="redis unavailable")

    logger.info("application_startup_complete")

    yield

    if FastAPILimiter.redis is not None:
        await FastAPILimiter.close()
        FastAPILimiter.redis = None
        logger.info("rate_limiter_closed")

    await container_manager.cleanup()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    description="Metered sentiment, profanity and intent analysis with result caching",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

add_exception_handlers(app)

app.include_router(analysis.router)
app.include_router(balance.router)
app.include_router(cache.router)
app.include_router(analytics.router)
app.include_router(system.router)

# Middleware stack (order matters: last added = first executed)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Accept",
        "Content-Type",
        "X-Admin-Key",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID"],
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info", access_log=True
    )
