"""
Analytics Routes: Per-Host Usage Reporting

Admin-only views over the analytics rollups. With analytics disabled the
responses say so (`analyticsNotAvailable`, or `success: false` for
maintenance operations) instead of failing.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from api.dependencies import get_analytics, require_admin_key
from api.schemas import AnalyticsCleanupRequest
from infrastructure.monitoring import get_logger
from services.analytics_service import AnalyticsRecorder

router = APIRouter(
    prefix="/api/analytics",
    tags=["Analytics"],
    dependencies=[Depends(require_admin_key)],
)
logger = get_logger(__name__)


def _host_required() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": "Host parameter required"},
    )


@router.get("", summary="Usage summary and series of a host")
async def get_host_analytics(
    host: Optional[str] = Query(None),
    analytics: AnalyticsRecorder = Depends(get_analytics),
):
    if not host:
        return _host_required()

    result = await analytics.get_host_analytics(host)
    return result.to_payload(exclude_none=True)


@router.delete("", summary="Delete every analytics record of a host")
async def reset_host_analytics(
    host: Optional[str] = Query(None),
    analytics: AnalyticsRecorder = Depends(get_analytics),
):
    if not host:
        return _host_required()

    result = await analytics.reset_host_analytics(host)
    logger.info("analytics_reset", host=host, success=result.success)
    return result.to_payload(exclude_none=True)


@router.post("/cleanup", summary="Delete analytics older than a number of days")
async def cleanup_host_analytics(
    request: AnalyticsCleanupRequest,
    analytics: AnalyticsRecorder = Depends(get_analytics),
):
    result = await analytics.cleanup_host_analytics(request.host, request.older_than)
    logger.info("analytics_cleaned_up", host=request.host, days=request.older_than)
    return result.to_payload(exclude_none=True)


@router.get("/hosts", summary="Hosts with recorded usage, busiest first")
async def get_hosts(analytics: AnalyticsRecorder = Depends(get_analytics)) -> Dict[str, Any]:
    hosts = await analytics.get_all_hosts()
    return {"hosts": [host.to_payload() for host in hosts]}
