"""
Account Balance Store

One mutable balance document per account holding the three game currencies.
Every write is a conditional update against the version that was read, and
every mutation goes through ``BalanceStore.update`` which reloads the
document, applies a mutation function and retries when a concurrent writer
got there first.

The ``in_flight`` journal on the balance records balance effects whose ledger
side has not been confirmed yet. It is written in the same document update as
the effect itself, which makes the effect idempotent per ledger entry and
lets the reconciliation sweep finish or undo half-done operations.
"""

import inspect
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Any, Union

from .async_storage import AsyncStorageInterface
from .storage import StorageRecord
from .errors import (
    AccountNotFoundError, ConcurrentModificationError, InsufficientFundsError,
    PersistenceFailure, ValidationError,
)
from .logging_config import get_logger, log_action


BALANCE_FIELDS = ("flowers", "tickets", "bvr_coins")

BVR_CURRENCY = "BVR"

ZERO = Decimal("0")


def balance_field_for_currency(currency: str) -> str:
    """Exactly "BVR" hits bvr_coins; every other currency, "bvr" included, hits flowers"""
    return "bvr_coins" if currency == BVR_CURRENCY else "flowers"


def to_decimal(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Convert a number coming from a request or a document to Decimal"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def operation_key(kind: str, entry_id: str) -> str:
    """Journal key; a withdrawal can carry both its debit and its refund"""
    return f"{kind}:{entry_id}"


@dataclass
class InFlightOperation:
    """A balance effect waiting for its ledger side to be confirmed"""
    entry_id: str
    kind: str  # "debit" or "credit"
    deltas: Dict[str, Decimal]
    recorded_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "kind": self.kind,
            "deltas": {k: str(v) for k, v in self.deltas.items()},
            "recorded_at": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InFlightOperation':
        return cls(
            entry_id=data["entry_id"],
            kind=data["kind"],
            deltas={k: Decimal(v) for k, v in data["deltas"].items()},
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
        )


@dataclass
class AccountBalance(StorageRecord):
    """Spendable quantities of each currency for one account (id = account id)"""
    flowers: Decimal = ZERO
    tickets: Decimal = ZERO
    bvr_coins: Decimal = ZERO
    last_updated: Optional[datetime] = None
    version: int = 0
    in_flight: Dict[str, InFlightOperation] = field(default_factory=dict)

    @property
    def account_id(self) -> str:
        return self.id

    def get(self, field_name: str) -> Decimal:
        if field_name not in BALANCE_FIELDS:
            raise ValidationError(f"Unknown balance field: {field_name}")
        return getattr(self, field_name)

    def apply_deltas(self, deltas: Dict[str, Decimal]) -> None:
        """
        Add signed deltas to the balance fields.

        Raises:
            InsufficientFundsError: If any field would go negative; the
                balance is left untouched in that case
        """
        updated = {}
        for field_name, delta in deltas.items():
            current = self.get(field_name)
            new_value = current + delta
            if new_value < ZERO:
                raise InsufficientFundsError(field_name, current, -delta)
            updated[field_name] = new_value
        for field_name, value in updated.items():
            setattr(self, field_name, value)
        self.last_updated = datetime.now(timezone.utc)

    def record_in_flight(self, entry_id: str, kind: str, deltas: Dict[str, Decimal]) -> None:
        self.in_flight[operation_key(kind, entry_id)] = InFlightOperation(
            entry_id=entry_id, kind=kind, deltas=dict(deltas),
            recorded_at=datetime.now(timezone.utc)
        )

    def has_in_flight(self, entry_id: str, kind: str) -> bool:
        return operation_key(kind, entry_id) in self.in_flight

    def clear_in_flight(self, entry_id: str, kind: str) -> Optional[InFlightOperation]:
        return self.in_flight.pop(operation_key(kind, entry_id), None)

    def snapshot(self) -> Dict[str, Decimal]:
        return {name: getattr(self, name) for name in BALANCE_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "flowers": str(self.flowers),
            "tickets": str(self.tickets),
            "bvr_coins": str(self.bvr_coins),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "version": self.version,
            "in_flight": {k: op.to_dict() for k, op in self.in_flight.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountBalance':
        last_updated = data.get("last_updated")
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            flowers=Decimal(data["flowers"]),
            tickets=Decimal(data["tickets"]),
            bvr_coins=Decimal(data["bvr_coins"]),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
            version=data.get("version", 0),
            in_flight={
                k: InFlightOperation.from_dict(v)
                for k, v in (data.get("in_flight") or {}).items()
            },
        )


# A mutation returns False when it decided nothing needs writing
BalanceMutation = Callable[[AccountBalance], Union[Optional[bool], Awaitable[Optional[bool]]]]


class BalanceStore:
    """Loads and conditionally writes account balances"""

    def __init__(self, storage: AsyncStorageInterface, max_retries: int = 3):
        self.storage = storage
        self.max_retries = max_retries
        self.table_name = "balances"
        self.logger = get_logger("garden.balances")

    async def get(self, account_id: str) -> Optional[AccountBalance]:
        try:
            data = await self.storage.load(self.table_name, account_id)
        except Exception as e:
            raise PersistenceFailure(f"Failed to load balance {account_id}", e) from e
        return AccountBalance.from_dict(data) if data else None

    async def require(self, account_id: str) -> AccountBalance:
        balance = await self.get(account_id)
        if balance is None:
            raise AccountNotFoundError(account_id)
        return balance

    async def create(
        self,
        account_id: str,
        flowers: Decimal = ZERO,
        tickets: Decimal = ZERO,
        bvr_coins: Decimal = ZERO
    ) -> AccountBalance:
        """Create the balance document for a new account"""
        now = datetime.now(timezone.utc)
        balance = AccountBalance(
            id=account_id,
            created_at=now,
            updated_at=now,
            flowers=to_decimal(flowers),
            tickets=to_decimal(tickets),
            bvr_coins=to_decimal(bvr_coins),
            last_updated=now,
            version=1,
        )
        if any(value < ZERO for value in balance.snapshot().values()):
            raise ValidationError("Starting balances must not be negative")

        try:
            created = await self.storage.conditional_save(
                self.table_name, account_id, balance.to_dict(), None
            )
        except Exception as e:
            raise PersistenceFailure(f"Failed to create balance {account_id}", e) from e
        if not created:
            raise ValidationError(f"Account {account_id} already exists")
        return balance

    async def save(self, balance: AccountBalance) -> AccountBalance:
        """
        Write a balance back, conditional on the version it was loaded at.

        Raises:
            ConcurrentModificationError: If another writer got there first
            PersistenceFailure: If the store write failed
        """
        expected = balance.version
        balance.version = expected + 1
        balance.updated_at = datetime.now(timezone.utc)
        try:
            written = await self.storage.conditional_save(
                self.table_name, balance.id, balance.to_dict(), expected
            )
        except Exception as e:
            balance.version = expected
            raise PersistenceFailure(f"Failed to persist balance {balance.id}", e) from e
        if not written:
            balance.version = expected
            raise ConcurrentModificationError(
                f"Balance {balance.id} changed since version {expected}"
            )
        return balance

    async def update(self, account_id: str, mutate: BalanceMutation) -> AccountBalance:
        """
        Reload the balance, apply ``mutate`` and write it back.

        The mutation always runs against freshly loaded state. Exceptions it
        raises (for example InsufficientFundsError) abort the update without
        writing. Version conflicts are retried up to ``max_retries`` times.

        Returns:
            The balance as written (or as loaded, if the mutation returned False)
        """
        for attempt in range(self.max_retries + 1):
            balance = await self.require(account_id)
            outcome = mutate(balance)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome is False:
                return balance
            try:
                return await self.save(balance)
            except ConcurrentModificationError:
                log_action(
                    self.logger, "warning", "Balance write lost a race, retrying",
                    account_id=account_id, action="balance_retry",
                    extra={"attempt": attempt + 1}
                )
        raise PersistenceFailure(
            f"Balance {account_id} kept changing; gave up after {self.max_retries + 1} attempts"
        )

    async def list_with_in_flight(self) -> List[AccountBalance]:
        """Balances that still carry unconfirmed operations"""
        try:
            rows = await self.storage.load_all(self.table_name)
        except Exception as e:
            raise PersistenceFailure("Failed to scan balances", e) from e
        balances = [AccountBalance.from_dict(row) for row in rows]
        return [b for b in balances if b.in_flight]
