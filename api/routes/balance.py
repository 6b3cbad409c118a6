"""
Balance Routes: Prepaid Host Balance Administration

The balance read is public so a host can check its own credit. Every
mutation, the transaction history and the host list require the admin key.
Ledger failures come back as `{success: false, error}` with status 400.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from api.dependencies import get_ledger, require_admin_key
from api.schemas import AddCreditsRequest, HostStatusRequest, RefundRequest
from core.models import LedgerOutcome
from infrastructure.monitoring import get_logger
from services.balance_ledger import HOST_NOT_REGISTERED, BalanceLedger

router = APIRouter(prefix="/api/balance", tags=["Balance"])
logger = get_logger(__name__)

PERFORMED_BY = "admin-api"


def _host_required() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": "Host parameter required"},
    )


def _respond(result: LedgerOutcome, failure_status: int = status.HTTP_400_BAD_REQUEST):
    if result.success:
        return result.to_payload(exclude_none=True)
    return JSONResponse(status_code=failure_status, content=result.to_payload(exclude_none=True))


@router.get("", summary="Current balance of a host")
async def get_balance(
    host: Optional[str] = Query(None),
    ledger: BalanceLedger = Depends(get_ledger),
):
    if not host:
        return _host_required()

    result = await ledger.get_host_balance(host)
    if not result.success and result.error == HOST_NOT_REGISTERED:
        return _respond(result, status.HTTP_404_NOT_FOUND)
    return _respond(result, status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.post("/add", summary="Add credits to a host", dependencies=[Depends(require_admin_key)])
async def add_credits(
    request: AddCreditsRequest,
    ledger: BalanceLedger = Depends(get_ledger),
):
    result = await ledger.add_credits(
        request.host,
        request.amount,
        description=request.description,
        reference=request.reference,
        performed_by=PERFORMED_BY,
    )
    logger.info("credits_added", host=request.host, amount=request.amount, success=result.success)
    return _respond(result)


@router.get(
    "/transactions",
    summary="Transaction history of a host, newest first",
    dependencies=[Depends(require_admin_key)],
)
async def get_transactions(
    host: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    ledger: BalanceLedger = Depends(get_ledger),
):
    if not host:
        return _host_required()

    result = await ledger.get_transaction_history(host, limit=limit, page=page)
    return _respond(result, status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.get(
    "/hosts",
    summary="All hosts with a balance record",
    dependencies=[Depends(require_admin_key)],
)
async def get_hosts(ledger: BalanceLedger = Depends(get_ledger)) -> Dict[str, Any]:
    result = await ledger.get_all_hosts()
    return _respond(result, status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.put(
    "/status",
    summary="Activate or deactivate a host",
    dependencies=[Depends(require_admin_key)],
)
async def update_status(
    request: HostStatusRequest,
    ledger: BalanceLedger = Depends(get_ledger),
):
    result = await ledger.update_host_status(request.host, request.active, request.notes)
    logger.info("host_status_updated", host=request.host, active=request.active)
    return _respond(result)


@router.post(
    "/refund",
    summary="Refund a deduction",
    dependencies=[Depends(require_admin_key)],
)
async def refund(
    request: RefundRequest,
    ledger: BalanceLedger = Depends(get_ledger),
):
    result = await ledger.refund_transaction(
        request.transaction_id, reason=request.reason, performed_by=PERFORMED_BY
    )
    logger.info(
        "transaction_refunded",
        transaction_id=request.transaction_id,
        success=result.success,
    )
    return _respond(result)
