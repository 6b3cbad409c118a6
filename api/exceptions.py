"""
API Exception Handlers: Domain Error -> HTTP Error Mapping

Every error body carries at least `error` and, where available, `details`.

    ValidationError / RequestValidationError -> 400
    PaymentRequiredError                     -> 402
    UpstreamParseError                       -> 500
    UpstreamError and anything unexpected    -> 500
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.exceptions import (
    GatewayException,
    PaymentRequiredError,
    UpstreamError,
    UpstreamParseError,
    ValidationError,
)
from infrastructure.monitoring import get_logger

logger = get_logger(__name__)

ANALYSIS_FAILED = "An error occurred during analysis"


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are client errors, reported as 400."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Invalid request",
            "details": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
            ],
        },
    )


async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": exc.message},
    )


async def payment_required_handler(request: Request, exc: PaymentRequiredError):
    """402 carrying the balance state the client needs to top up."""
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={
            "error": "Payment required",
            "details": exc.message,
            "balance": exc.balance,
            "estimatedCost": exc.estimated_cost,
            "hostExists": exc.host_exists,
            "active": exc.active,
            "sufficient": False,
        },
    )


async def upstream_parse_error_handler(request: Request, exc: UpstreamParseError):
    logger.error(
        "upstream_parse_failed", error_id=str(exc.error_id), request_id=_request_id(request)
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Failed to parse OpenAI response", "details": exc.message},
    )


async def upstream_error_handler(request: Request, exc: UpstreamError):
    logger.error(
        "upstream_failed",
        error_id=str(exc.error_id),
        upstream_status=exc.upstream_status,
        request_id=_request_id(request),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": ANALYSIS_FAILED, "details": exc.message},
    )


async def gateway_error_handler(request: Request, exc: GatewayException):
    logger.error("gateway_error", **exc.to_dict(), request_id=_request_id(request))
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": ANALYSIS_FAILED, "details": exc.message},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", request_id=_request_id(request))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": ANALYSIS_FAILED, "details": str(exc)},
    )


def add_exception_handlers(app: FastAPI):
    """Add all exception handlers to the FastAPI app."""
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(PaymentRequiredError, payment_required_handler)
    app.add_exception_handler(UpstreamParseError, upstream_parse_error_handler)
    app.add_exception_handler(UpstreamError, upstream_error_handler)
    app.add_exception_handler(GatewayException, gateway_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
