"""
Deposit recording, account opening and administrative credit.

Deposits and purchases are recorded as pending entries with no balance
effect; an administrator completes them later through the status processor.
Administrative credits bypass that flow but still leave a completed
``admin_credit`` entry behind, so every balance change has a ledger record.
"""

from decimal import Decimal
from typing import Optional, Union

from .audit import AuditTrail, AuditEventType
from .balances import AccountBalance, BalanceStore, BVR_CURRENCY, to_decimal, ZERO
from .errors import ValidationError
from .ledger import (
    BalanceEffect, EntryStatus, EntryType, LedgerEntry, LedgerStore,
    is_withdrawal_class, new_entry,
)
from .locks import AccountLockManager, account_lock_key
from .status import StatusTransitionProcessor
from .logging_config import get_logger, log_action


Number = Union[Decimal, int, float, str]

_CURRENCY_LABELS = {"flowers": "FLOWERS", "tickets": "TICKETS", "bvr_coins": BVR_CURRENCY}


def _optional_decimal(value: Optional[Number]) -> Optional[Decimal]:
    return to_decimal(value) if value is not None else None


class DepositManager:
    """Records non-withdrawal entries and performs administrative credits"""

    def __init__(
        self,
        balances: BalanceStore,
        ledger: LedgerStore,
        locks: AccountLockManager,
        effects: StatusTransitionProcessor,
        audit_trail: Optional[AuditTrail] = None,
        lock_timeout: float = 5.0
    ):
        self.balances = balances
        self.ledger = ledger
        self.locks = locks
        self.effects = effects
        self.audit_trail = audit_trail
        self.lock_timeout = lock_timeout
        self.logger = get_logger("garden.deposits")

    async def open_account(
        self,
        account_id: str,
        flowers: Number = 0,
        tickets: Number = 0,
        bvr_coins: Number = 0
    ) -> AccountBalance:
        """Create the balance document of a new account"""
        if not account_id:
            raise ValidationError("Account id is required")
        balance = await self.balances.create(account_id, flowers, tickets, bvr_coins)

        log_action(
            self.logger, "info", "Account opened", account_id=account_id,
            action="open_account", extra={k: str(v) for k, v in balance.snapshot().items()}
        )
        if self.audit_trail:
            await self.audit_trail.try_log_event(
                AuditEventType.ACCOUNT_OPENED, "balance", account_id, balance.snapshot()
            )
        return balance

    async def record_entry(
        self,
        account_id: str,
        entry_type: Union[EntryType, str],
        amount: Number,
        currency: str,
        address: Optional[str] = None,
        crypto_address: Optional[str] = None,
        network: Optional[str] = None,
        wallet_address: Optional[str] = None,
        usd_amount: Optional[Number] = None,
        fees: Optional[Number] = None,
        received_amount: Optional[Number] = None,
        flowers_amount: Optional[Number] = None,
        tickets_amount: Optional[Number] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> LedgerEntry:
        """
        Record a pending deposit, purchase or exchange

        Nothing is credited until the entry is completed.

        Raises:
            ValidationError: Bad amount or a withdrawal type
            AccountNotFoundError: If the account has no balance document
            LockTimeoutError: If the account lease was not granted in time
        """
        if isinstance(entry_type, str):
            try:
                entry_type = EntryType(entry_type)
            except ValueError:
                raise ValidationError(f"Unknown entry type: {entry_type}") from None
        if is_withdrawal_class(entry_type):
            raise ValidationError("Withdrawals must be submitted through the withdrawal endpoint")
        if entry_type == EntryType.ADMIN_CREDIT:
            raise ValidationError("Administrative credits are recorded by admin_credit")
        amount = to_decimal(amount)
        if amount < ZERO:
            raise ValidationError("Amount must not be negative")
        if not currency:
            raise ValidationError("Currency is required")
        for name, value in (("flowers_amount", flowers_amount), ("tickets_amount", tickets_amount)):
            if value is not None and to_decimal(value) < ZERO:
                raise ValidationError(f"{name} must not be negative")

        entry = new_entry(
            account_id, entry_type, amount, currency,
            address=address,
            crypto_address=crypto_address,
            network=network,
            wallet_address=wallet_address,
            usd_amount=_optional_decimal(usd_amount),
            fees=_optional_decimal(fees),
            received_amount=_optional_decimal(received_amount),
            flowers_amount=_optional_decimal(flowers_amount),
            tickets_amount=_optional_decimal(tickets_amount),
            notes=notes,
            idempotency_key=idempotency_key,
        )

        # Key lookup and create must not interleave with another submission
        async with self.locks.lease(account_lock_key(account_id), self.lock_timeout):
            await self.balances.require(account_id)
            if idempotency_key:
                existing = await self.ledger.find_by_idempotency_key(account_id, idempotency_key)
                if existing is not None:
                    log_action(
                        self.logger, "info", "Duplicate entry submission, returning original entry",
                        account_id=account_id, entry_id=existing.id, action="record_entry_replay"
                    )
                    return existing
            await self.ledger.create(entry)

        log_action(
            self.logger, "info", f"Entry recorded: {entry_type.value} {amount} {currency}",
            account_id=account_id, entry_id=entry.id, action="record_entry"
        )
        if self.audit_trail:
            await self.audit_trail.try_log_event(
                AuditEventType.ENTRY_RECORDED, "ledger_entry", entry.id,
                {"account_id": account_id, "entry_type": entry_type.value,
                 "amount": amount, "currency": currency}
            )
        return entry

    async def admin_credit(
        self,
        account_id: str,
        flowers: Number = 0,
        tickets: Number = 0,
        bvr_coins: Number = 0,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None
    ) -> LedgerEntry:
        """
        Credit an account directly and record a completed admin_credit entry

        The entry is written first with its effect pending, then the credit
        lands through the balance journal like any other terminal effect.
        """
        deltas = {
            "flowers": to_decimal(flowers),
            "tickets": to_decimal(tickets),
            "bvr_coins": to_decimal(bvr_coins),
        }
        if any(v < ZERO for v in deltas.values()):
            raise ValidationError("Credit amounts must not be negative")
        deltas = {k: v for k, v in deltas.items() if v != ZERO}
        if not deltas:
            raise ValidationError("Nothing to credit")

        if len(deltas) == 1:
            field_name, amount = next(iter(deltas.items()))
            currency = _CURRENCY_LABELS[field_name]
        else:
            amount, currency = sum(deltas.values(), ZERO), "MIXED"

        async with self.locks.lease(account_lock_key(account_id), self.lock_timeout):
            await self.balances.require(account_id)

            entry = new_entry(
                account_id, EntryType.ADMIN_CREDIT, amount, currency,
                status=EntryStatus.COMPLETED,
                flowers_amount=deltas.get("flowers"),
                tickets_amount=deltas.get("tickets"),
                bvr_amount=deltas.get("bvr_coins"),
                notes=reason,
                processed_by=processed_by,
                balance_effect=BalanceEffect.PENDING,
            )
            entry.processed_at = entry.created_at
            await self.ledger.create(entry)
            await self.effects.apply_effect(entry, deltas)

        log_action(
            self.logger, "info", "Administrative credit applied",
            account_id=account_id, entry_id=entry.id, action="admin_credit",
            extra={k: str(v) for k, v in deltas.items()}
        )
        if self.audit_trail:
            await self.audit_trail.try_log_event(
                AuditEventType.ADMIN_CREDIT, "balance", account_id,
                {"entry_id": entry.id, "deltas": deltas, "reason": reason},
                actor=processed_by
            )
        return entry
