"""
Ledger entry endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_ledger_service, to_http_error
from .schemas import (
    ApproveRequest, RecordEntryRequest, StatusUpdateRequest, WithdrawRequest,
    entry_to_response,
)
from ..errors import LedgerError
from ..service import LedgerService


router = APIRouter()


@router.get("/pending/all")
async def list_pending(service: LedgerService = Depends(get_ledger_service)):
    """Entries awaiting an administrator"""
    try:
        entries = await service.list_pending()
    except LedgerError as e:
        raise to_http_error(e)
    return {"success": True, "transactions": [entry_to_response(e) for e in entries]}


@router.get("/history/all")
async def list_history(service: LedgerService = Depends(get_ledger_service)):
    """Completed, cancelled and failed entries"""
    try:
        entries = await service.list_history()
    except LedgerError as e:
        raise to_http_error(e)
    return {"success": True, "transactions": [entry_to_response(e) for e in entries]}


@router.get("/{account_id}")
async def list_account_entries(account_id: str, service: LedgerService = Depends(get_ledger_service)):
    """Most recent entries of one account"""
    try:
        entries = await service.list_account_entries(account_id)
    except LedgerError as e:
        raise to_http_error(e)
    return {"success": True, "transactions": [entry_to_response(e) for e in entries]}


@router.post("/withdraw", status_code=status.HTTP_201_CREATED)
async def submit_withdrawal(
    request: WithdrawRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Debit the account and record a pending withdrawal"""
    try:
        result = await service.submit_withdrawal(
            request.account_id,
            request.amount,
            request.currency,
            address=request.address,
            crypto_address=request.crypto_address,
            entry_type=request.type,
            network=request.network,
            wallet_address=request.wallet_address,
            usd_amount=request.usd_amount,
            fees=request.fees,
            received_amount=request.received_amount,
            notes=request.notes,
            account_email=request.account_email,
            idempotency_key=request.idempotency_key,
        )
    except LedgerError as e:
        raise to_http_error(e)

    return {
        "success": True,
        "message": "Withdrawal request submitted",
        "transaction": entry_to_response(result.entry),
        "remaining_flowers": str(result.remaining_flowers),
        "remaining_bvr": str(result.remaining_bvr),
        "replayed": result.replayed,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_entry(
    request: RecordEntryRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Record a pending deposit, purchase or exchange"""
    details = request.model_dump(exclude={"account_id", "type", "amount", "currency"})
    try:
        entry = await service.record_entry(
            request.account_id, request.type, request.amount, request.currency, **details
        )
    except LedgerError as e:
        raise to_http_error(e)
    return {"success": True, "transaction": entry_to_response(entry)}


@router.put("/{entry_id}/status")
async def update_status(
    entry_id: str,
    request: StatusUpdateRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Administrator status change with its credit or refund"""
    try:
        entry = await service.set_status(
            entry_id, request.status, request.admin_notes, request.processed_by
        )
    except LedgerError as e:
        raise to_http_error(e)
    return {
        "success": True,
        "message": "Transaction status updated",
        "transaction": {
            "id": entry.id,
            "status": entry.status.value,
            "admin_notes": entry.admin_notes,
        },
    }


@router.put("/{entry_id}/approve")
async def approve(
    entry_id: str,
    request: ApproveRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Approve a pending purchase or deposit"""
    try:
        entry = await service.approve(entry_id, request.processed_by, request.admin_notes)
    except LedgerError as e:
        raise to_http_error(e)
    return {
        "success": True,
        "message": "Transaction approved successfully",
        "transaction": entry_to_response(entry),
    }
