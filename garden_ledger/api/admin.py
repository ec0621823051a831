"""
Administrative endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .dependencies import get_ledger_service, to_http_error
from .schemas import AdminCreditRequest, ReconcileRequest, entry_to_response
from ..errors import LedgerError
from ..service import LedgerService


router = APIRouter()


@router.post("/credit", status_code=status.HTTP_201_CREATED)
async def admin_credit(
    request: AdminCreditRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Credit an account directly; recorded as a completed admin_credit entry"""
    try:
        entry = await service.admin_credit(
            request.account_id,
            flowers=request.flowers,
            tickets=request.tickets,
            bvr_coins=request.bvr_coins,
            reason=request.reason,
            processed_by=request.processed_by,
        )
        balance = await service.get_balance(request.account_id)
    except LedgerError as e:
        raise to_http_error(e)
    return {
        "success": True,
        "transaction": entry_to_response(entry),
        "balance": {k: str(v) for k, v in balance.snapshot().items()},
    }


@router.post("/reconcile")
async def reconcile(
    request: Optional[ReconcileRequest] = None,
    service: LedgerService = Depends(get_ledger_service)
):
    """Run one reconciliation sweep"""
    grace = request.grace_seconds if request else None
    try:
        report = await service.reconcile(grace)
    except LedgerError as e:
        raise to_http_error(e)
    return report.to_dict()


@router.get("/audit/verify")
async def verify_audit_chain(service: LedgerService = Depends(get_ledger_service)):
    if service.audit_trail is None:
        return {"enabled": False}
    result = await service.audit_trail.verify_integrity()
    result["enabled"] = True
    return result
