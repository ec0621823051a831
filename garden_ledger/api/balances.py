"""
Balance endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_ledger_service, to_http_error
from .schemas import OpenAccountRequest, balance_to_response
from ..errors import LedgerError
from ..service import LedgerService


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def open_account(
    request: OpenAccountRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Create the balance of a new account"""
    try:
        balance = await service.open_account(
            request.account_id,
            flowers=request.flowers,
            tickets=request.tickets,
            bvr_coins=request.bvr_coins,
        )
    except LedgerError as e:
        raise to_http_error(e)
    return balance_to_response(balance)


@router.get("/{account_id}")
async def get_balance(account_id: str, service: LedgerService = Depends(get_ledger_service)):
    try:
        balance = await service.get_balance(account_id)
    except LedgerError as e:
        raise to_http_error(e)
    return balance_to_response(balance)
