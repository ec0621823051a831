"""
Shared API dependencies: the ledger service and error mapping
"""

from fastapi import HTTPException, Request

from ..errors import LedgerError, LockTimeoutError
from ..service import LedgerService


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger


def to_http_error(error: LedgerError) -> HTTPException:
    """HTTPException carrying the status the error class declares"""
    headers = None
    if isinstance(error, LockTimeoutError):
        headers = {"Retry-After": "1"}
    return HTTPException(status_code=error.http_status, detail=str(error), headers=headers)
