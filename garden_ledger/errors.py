"""
Ledger error taxonomy.

Every error raised by the ledger core derives from LedgerError and carries the
HTTP status the routing layer should answer with.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for ledger failures"""
    http_status = 500
    retryable = False


class ValidationError(LedgerError, ValueError):
    """Request is malformed; nothing was touched"""
    http_status = 400


class AccountNotFoundError(LedgerError):
    http_status = 404

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class EntryNotFoundError(LedgerError):
    http_status = 404

    def __init__(self, entry_id: str):
        super().__init__(f"Ledger entry {entry_id} not found")
        self.entry_id = entry_id


class InsufficientFundsError(LedgerError):
    """Business-rule rejection, no mutation performed"""
    http_status = 400

    def __init__(self, field: str, current: Decimal, required: Decimal):
        super().__init__(f"Insufficient {field}: available {current}, requested {required}")
        self.field = field
        self.current = current
        self.required = required


class LockTimeoutError(LedgerError):
    """The account lease was not granted in time; the caller should retry"""
    http_status = 429
    retryable = True

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for {key}")
        self.key = key
        self.timeout = timeout


class InvalidTransitionError(LedgerError):
    """Status change out of a terminal state"""
    http_status = 409

    def __init__(self, entry_id: str, current: str, requested: str):
        super().__init__(f"Ledger entry {entry_id} is {current}; cannot move to {requested}")
        self.entry_id = entry_id
        self.current = current
        self.requested = requested


class ConcurrentModificationError(LedgerError):
    """A conditional write found the document changed since it was read"""
    http_status = 409
    retryable = True


class PersistenceFailure(LedgerError):
    """A store write failed"""
    http_status = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class CompensationFailedError(PersistenceFailure):
    """The compensating write failed; manual reconciliation is required"""
