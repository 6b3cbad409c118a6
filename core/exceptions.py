"""
Gateway Error Taxonomy
======================
Every failure the gateway raises on purpose derives from `GatewayException`
and carries an error ID, a severity and a context dict for the log line.

Request-path errors (validation, payment, upstream) abort the request and
map to HTTP statuses in `api/exceptions.py`. Side-effect errors (ledger
writes after a confirmed balance, analytics writes) are raised and caught
at their call site and never reach the HTTP layer.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from core.enums import ErrorSeverity

# =============================================================================
# ROOT
# =============================================================================


class GatewayException(Exception):
    """
    Root of the gateway's error hierarchy.

    `status_code` is the HTTP status the API layer answers with when the
    error escapes a route; `error_code` is a stable machine-readable tag.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[dict[str, Any]] = None,
        error_code: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity
        self.context: dict[str, Any] = context or {}
        self.error_code = error_code
        self.error_id: UUID = uuid4()
        self.raised_at: datetime = datetime.now(timezone.utc)

        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Flat representation for structured log events."""
        payload = {
            "error_id": str(self.error_id),
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "severity": self.severity.name,
            "message": self.message,
            "raised_at": self.raised_at.isoformat(),
            **self.context,
        }
        if self.__cause__ is not None:
            payload["cause"] = repr(self.__cause__)
        return payload

    def __str__(self) -> str:
        if self.error_code:
            return f"{self.error_code}: {self.message}"
        return self.message


# =============================================================================
# REQUEST VALIDATION
# =============================================================================


class ValidationError(GatewayException):
    """Missing or malformed required input. Never retried."""

    status_code = 400

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            context={"field": field},
            error_code="VALIDATION_ERROR",
            **kwargs,
        )
        self.field = field


# =============================================================================
# BILLING
# =============================================================================


class PaymentRequiredError(GatewayException):
    """
    Host balance cannot cover the request.

    Raised for unknown hosts, inactive hosts and insufficient balance. The
    client must top up and resubmit.
    """

    status_code = 402

    def __init__(
        self,
        message: str = "Insufficient balance",
        *,
        balance: float = 0.0,
        estimated_cost: float = 0.0,
        host_exists: bool = False,
        active: bool = False,
        **kwargs,
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            context={
                "balance": balance,
                "estimated_cost": estimated_cost,
                "host_exists": host_exists,
                "active": active,
            },
            error_code="PAYMENT_REQUIRED",
            **kwargs,
        )
        self.balance = balance
        self.estimated_cost = estimated_cost
        self.host_exists = host_exists
        self.active = active


class LedgerWriteError(GatewayException):
    """Balance mutation could not be persisted."""

    def __init__(self, message: str, *, host: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            context={"host": host},
            error_code="LEDGER_WRITE_ERROR",
            **kwargs,
        )


# =============================================================================
# UPSTREAM CLASSIFIER
# =============================================================================


class UpstreamError(GatewayException):
    """Network or HTTP failure calling the classification endpoint."""

    def __init__(
        self,
        message: str = "Upstream classification request failed",
        *,
        model: Optional[str] = None,
        status: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("error_code", "UPSTREAM_ERROR")
        super().__init__(
            message,
            context={"model": model, "upstream_status": status},
            **kwargs,
        )
        self.upstream_status = status


class UpstreamTimeoutError(UpstreamError):
    """Classification request exceeded the configured timeout."""

    def __init__(
        self,
        message: str = "Upstream classification request timed out",
        *,
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, error_code="UPSTREAM_TIMEOUT", **kwargs)
        self.context["timeout_seconds"] = timeout_seconds


class UpstreamParseError(GatewayException):
    """Upstream returned content that is not the expected JSON object."""

    def __init__(
        self,
        message: str = "Failed to parse classifier response",
        *,
        response_text: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            context={"response_preview": response_text[:500] if response_text else None},
            error_code="UPSTREAM_PARSE_ERROR",
            **kwargs,
        )
        self.response_text = response_text


# =============================================================================
# INFRASTRUCTURE
# =============================================================================


class InfrastructureError(GatewayException):
    """Backing service unavailable or misbehaving."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


class DatabaseConnectionError(InfrastructureError):
    """Record store could not be reached."""

    def __init__(self, message: str, *, host: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            context={"host": host},
            error_code="DB_CONNECTION_ERROR",
            **kwargs,
        )


class CacheError(GatewayException):
    """Result cache operation failed."""

    def __init__(self, message: str, *, cache_key: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            context={"cache_key": cache_key},
            error_code="CACHE_ERROR",
            **kwargs,
        )


class AnalyticsWriteError(GatewayException):
    """Usage analytics could not be recorded. Logged only."""

    def __init__(self, message: str, *, host: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.WARNING,
            context={"host": host},
            error_code="ANALYTICS_WRITE_ERROR",
            **kwargs,
        )


__all__ = [
    "GatewayException",
    "ValidationError",
    "PaymentRequiredError",
    "LedgerWriteError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "UpstreamParseError",
    "InfrastructureError",
    "DatabaseConnectionError",
    "CacheError",
    "AnalyticsWriteError",
]
