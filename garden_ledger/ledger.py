"""
Ledger Store Module

Ledger entries are append-created records of one requested balance mutation
and its outcome. An entry starts ``pending`` and moves to a terminal status
exactly once; after that it never changes again. Writes are conditional on
the entry version so two administrators cannot both move the same entry out
of ``pending``.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
import uuid

from .async_storage import AsyncStorageInterface
from .storage import StorageRecord
from .errors import ConcurrentModificationError, EntryNotFoundError, PersistenceFailure


class EntryType(Enum):
    """Kinds of ledger entries"""
    DEPOSIT = "deposit"
    DEPOSIT_CRYPTO = "deposit_crypto"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_DIAMOND = "withdrawal_diamond"
    WITHDRAWAL_BVR = "withdrawal_bvr"
    EXCHANGE = "exchange"
    FLOWER_PURCHASE = "flower_purchase"
    REFERRAL_BONUS = "referral_bonus"
    TRANSFER_RECEIVED = "transfer_received"
    ADMIN_CREDIT = "admin_credit"  # Synthetic entry for direct administrative credits


class EntryStatus(Enum):
    """Ledger entry states"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != EntryStatus.PENDING


TERMINAL_STATUSES = frozenset({EntryStatus.COMPLETED, EntryStatus.FAILED, EntryStatus.CANCELLED})


class BalanceEffect(Enum):
    """Whether the balance effect of a terminal transition has landed"""
    NONE = "none"
    PENDING = "pending"
    APPLIED = "applied"


WITHDRAWAL_TYPES = frozenset({
    EntryType.WITHDRAWAL, EntryType.WITHDRAWAL_DIAMOND, EntryType.WITHDRAWAL_BVR,
})

_CREDIT_TYPES = frozenset({EntryType.REFERRAL_BONUS, EntryType.TRANSFER_RECEIVED})


def is_withdrawal_class(entry_type: EntryType) -> bool:
    return entry_type in WITHDRAWAL_TYPES


def is_deposit_class(entry_type: EntryType) -> bool:
    """Types whose completion credits flowers and tickets"""
    return "deposit" in entry_type.value or entry_type in _CREDIT_TYPES


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class LedgerEntry(StorageRecord):
    """One requested balance mutation and its outcome"""
    account_id: str
    entry_type: EntryType
    amount: Decimal
    currency: str
    status: EntryStatus = EntryStatus.PENDING

    # Destination details
    address: Optional[str] = None
    crypto_address: Optional[str] = None
    network: Optional[str] = None
    wallet_address: Optional[str] = None

    # Deposit details
    usd_amount: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    received_amount: Optional[Decimal] = None
    flowers_amount: Optional[Decimal] = None
    tickets_amount: Optional[Decimal] = None
    bvr_amount: Optional[Decimal] = None

    # Processing details
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    account_email: Optional[str] = None

    idempotency_key: Optional[str] = None
    balance_effect: BalanceEffect = BalanceEffect.NONE
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == EntryStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['entry_type'] = self.entry_type.value
        result['status'] = self.status.value
        result['balance_effect'] = self.balance_effect.value
        result['processed_at'] = self.processed_at.isoformat() if self.processed_at else None
        for key in ('usd_amount', 'fees', 'received_amount', 'flowers_amount', 'tickets_amount', 'bvr_amount'):
            if result[key] is not None:
                result[key] = str(result[key])
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            entry_type=EntryType(data['entry_type']),
            amount=Decimal(data['amount']),
            currency=data['currency'],
            status=EntryStatus(data['status']),
            address=data.get('address'),
            crypto_address=data.get('crypto_address'),
            network=data.get('network'),
            wallet_address=data.get('wallet_address'),
            usd_amount=_decimal_or_none(data.get('usd_amount')),
            fees=_decimal_or_none(data.get('fees')),
            received_amount=_decimal_or_none(data.get('received_amount')),
            flowers_amount=_decimal_or_none(data.get('flowers_amount')),
            tickets_amount=_decimal_or_none(data.get('tickets_amount')),
            bvr_amount=_decimal_or_none(data.get('bvr_amount')),
            notes=data.get('notes'),
            admin_notes=data.get('admin_notes'),
            processed_by=data.get('processed_by'),
            processed_at=_datetime_or_none(data.get('processed_at')),
            account_email=data.get('account_email'),
            idempotency_key=data.get('idempotency_key'),
            balance_effect=BalanceEffect(data.get('balance_effect', 'none')),
            version=data.get('version', 0),
        )


def new_entry(
    account_id: str,
    entry_type: EntryType,
    amount: Decimal,
    currency: str,
    status: EntryStatus = EntryStatus.PENDING,
    **details: Any
) -> LedgerEntry:
    """Build an unsaved entry with a fresh id"""
    now = datetime.now(timezone.utc)
    return LedgerEntry(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        account_id=account_id,
        entry_type=entry_type,
        amount=amount,
        currency=currency,
        status=status,
        **details
    )


class LedgerStore:
    """Persists ledger entries"""

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage
        self.table_name = "ledger_entries"

    async def create(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Persist a new entry.

        Raises:
            PersistenceFailure: If the write failed or the id already exists
        """
        entry.version = 1
        try:
            created = await self.storage.conditional_save(
                self.table_name, entry.id, entry.to_dict(), None
            )
        except Exception as e:
            raise PersistenceFailure(f"Failed to persist ledger entry {entry.id}", e) from e
        if not created:
            raise PersistenceFailure(f"Ledger entry {entry.id} already exists")
        return entry

    async def save(self, entry: LedgerEntry) -> LedgerEntry:
        """Write back an entry, conditional on the version it was loaded at"""
        expected = entry.version
        entry.version = expected + 1
        entry.updated_at = datetime.now(timezone.utc)
        try:
            written = await self.storage.conditional_save(
                self.table_name, entry.id, entry.to_dict(), expected
            )
        except Exception as e:
            entry.version = expected
            raise PersistenceFailure(f"Failed to persist ledger entry {entry.id}", e) from e
        if not written:
            entry.version = expected
            raise ConcurrentModificationError(
                f"Ledger entry {entry.id} changed since version {expected}"
            )
        return entry

    async def get(self, entry_id: str) -> Optional[LedgerEntry]:
        try:
            data = await self.storage.load(self.table_name, entry_id)
        except Exception as e:
            raise PersistenceFailure(f"Failed to load ledger entry {entry_id}", e) from e
        return LedgerEntry.from_dict(data) if data else None

    async def require(self, entry_id: str) -> LedgerEntry:
        entry = await self.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    async def delete(self, entry_id: str) -> bool:
        """Remove an entry (only ever used to compensate a failed withdrawal)"""
        try:
            return await self.storage.delete(self.table_name, entry_id)
        except Exception as e:
            raise PersistenceFailure(f"Failed to delete ledger entry {entry_id}", e) from e

    async def _find(self, filters: Dict[str, Any]) -> List[LedgerEntry]:
        try:
            rows = await self.storage.find(self.table_name, filters)
        except Exception as e:
            raise PersistenceFailure("Failed to query ledger entries", e) from e
        return [LedgerEntry.from_dict(row) for row in rows]

    async def find_by_idempotency_key(self, account_id: str, key: str) -> Optional[LedgerEntry]:
        entries = await self._find({"account_id": account_id, "idempotency_key": key})
        return entries[0] if entries else None

    async def list_for_account(self, account_id: str, limit: Optional[int] = 50) -> List[LedgerEntry]:
        """Entries of one account, most recent first"""
        entries = await self._find({"account_id": account_id})
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit] if limit else entries

    async def list_by_status(
        self,
        statuses: Iterable[EntryStatus],
        limit: Optional[int] = 100,
        order_by: str = "created_at"
    ) -> List[LedgerEntry]:
        entries: List[LedgerEntry] = []
        for status in statuses:
            entries.extend(await self._find({"status": status.value}))
        entries.sort(key=lambda e: getattr(e, order_by), reverse=True)
        return entries[:limit] if limit else entries

    async def list_pending(self, limit: Optional[int] = 100) -> List[LedgerEntry]:
        """Entries awaiting an administrator, most recent first"""
        return await self.list_by_status([EntryStatus.PENDING], limit)

    async def list_history(self, limit: Optional[int] = 100) -> List[LedgerEntry]:
        """Processed entries, most recently updated first"""
        return await self.list_by_status(TERMINAL_STATUSES, limit, order_by="updated_at")

    async def list_unsettled(self) -> List[LedgerEntry]:
        """Terminal entries whose balance effect has not been confirmed"""
        return await self._find({"balance_effect": BalanceEffect.PENDING.value})
