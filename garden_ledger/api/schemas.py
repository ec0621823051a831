"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..balances import AccountBalance
from ..ledger import LedgerEntry


class WithdrawRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, description="Quantity to withdraw")
    currency: str = Field(..., min_length=1, description="BVR debits bvr_coins, anything else flowers")
    type: str = Field("withdrawal", description="withdrawal, withdrawal_diamond or withdrawal_bvr")
    address: Optional[str] = None
    crypto_address: Optional[str] = None
    network: Optional[str] = None
    wallet_address: Optional[str] = None
    usd_amount: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    received_amount: Optional[Decimal] = None
    notes: Optional[str] = None
    account_email: Optional[str] = None
    idempotency_key: Optional[str] = None


class RecordEntryRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    type: str
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(..., min_length=1)
    address: Optional[str] = None
    crypto_address: Optional[str] = None
    network: Optional[str] = None
    wallet_address: Optional[str] = None
    usd_amount: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    received_amount: Optional[Decimal] = None
    flowers_amount: Optional[Decimal] = None
    tickets_amount: Optional[Decimal] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., min_length=1)
    admin_notes: Optional[str] = None
    processed_by: Optional[str] = None


class ApproveRequest(BaseModel):
    processed_by: Optional[str] = None
    admin_notes: Optional[str] = None


class OpenAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    flowers: Decimal = Field(Decimal("0"), ge=0)
    tickets: Decimal = Field(Decimal("0"), ge=0)
    bvr_coins: Decimal = Field(Decimal("0"), ge=0)


class AdminCreditRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    flowers: Decimal = Field(Decimal("0"), ge=0)
    tickets: Decimal = Field(Decimal("0"), ge=0)
    bvr_coins: Decimal = Field(Decimal("0"), ge=0)
    reason: Optional[str] = None
    processed_by: Optional[str] = None


class ReconcileRequest(BaseModel):
    grace_seconds: Optional[float] = Field(None, ge=0)


def entry_to_response(entry: LedgerEntry) -> Dict[str, Any]:
    data = entry.to_dict()
    data["type"] = data.pop("entry_type")
    data.pop("version", None)
    return data


def balance_to_response(balance: AccountBalance) -> Dict[str, Any]:
    return {
        "account_id": balance.account_id,
        "flowers": str(balance.flowers),
        "tickets": str(balance.tickets),
        "bvr_coins": str(balance.bvr_coins),
        "last_updated": balance.last_updated.isoformat() if balance.last_updated else None,
        "pending_operations": len(balance.in_flight),
    }
