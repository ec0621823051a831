"""
Status Transition Processor

Administrator-driven moves of a ledger entry out of ``pending`` and the
balance effect that goes with them:

- deposit-class entries completed: credit flowers_amount / tickets_amount,
  plus one bonus ticket per 10 USD on crypto deposits;
- withdrawal-class entries cancelled or failed: refund the debited amount;
- everything else: status only.

Transitions run under the account lease. The entry is written first with
``balance_effect = pending`` through a conditional update that only succeeds
from ``pending``; the effect is then applied to the balance together with an
``in_flight`` journal record keyed by the entry id, so it lands at most once
even when a request is replayed or the sweep finishes the job.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from .audit import AuditTrail, AuditEventType
from .balances import AccountBalance, BalanceStore, balance_field_for_currency, ZERO
from .errors import (
    ConcurrentModificationError, InvalidTransitionError, LedgerError, PersistenceFailure,
    ValidationError,
)
from .ledger import (
    BalanceEffect, EntryStatus, EntryType, LedgerEntry, LedgerStore,
    is_deposit_class, is_withdrawal_class,
)
from .locks import AccountLockManager, account_lock_key
from .logging_config import get_logger, log_action


USD_PER_BONUS_TICKET = Decimal("10")


def parse_status(status: Union[EntryStatus, str]) -> EntryStatus:
    if isinstance(status, EntryStatus):
        return status
    try:
        return EntryStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown status: {status}") from None


def deposit_bonus_tickets(entry: LedgerEntry) -> Decimal:
    """floor(usd_amount / 10) for crypto deposits, zero otherwise"""
    if entry.entry_type != EntryType.DEPOSIT_CRYPTO or entry.usd_amount is None:
        return ZERO
    if entry.usd_amount <= ZERO:
        return ZERO
    return entry.usd_amount // USD_PER_BONUS_TICKET


def _credit_deltas(entry: LedgerEntry, bonus: Decimal = ZERO) -> Dict[str, Decimal]:
    deltas = {
        "flowers": entry.flowers_amount or ZERO,
        "tickets": (entry.tickets_amount or ZERO) + bonus,
        "bvr_coins": entry.bvr_amount or ZERO,
    }
    return {k: v for k, v in deltas.items() if v != ZERO}


def balance_deltas(entry: LedgerEntry, status: EntryStatus, approval: bool = False) -> Dict[str, Decimal]:
    """
    Signed balance changes caused by moving ``entry`` to ``status``

    ``approval`` marks the approve path, the only one that credits purchases
    and exchanges.
    """
    if is_withdrawal_class(entry.entry_type):
        if status in (EntryStatus.CANCELLED, EntryStatus.FAILED):
            return {balance_field_for_currency(entry.currency): entry.amount}
        return {}
    if status != EntryStatus.COMPLETED:
        return {}
    if is_deposit_class(entry.entry_type):
        return _credit_deltas(entry, deposit_bonus_tickets(entry))
    if approval or entry.entry_type == EntryType.ADMIN_CREDIT:
        return _credit_deltas(entry)
    return {}


class StatusTransitionProcessor:
    """Applies administrator status changes to ledger entries"""

    def __init__(
        self,
        balances: BalanceStore,
        ledger: LedgerStore,
        locks: AccountLockManager,
        audit_trail: Optional[AuditTrail] = None,
        lock_timeout: float = 5.0
    ):
        self.balances = balances
        self.ledger = ledger
        self.locks = locks
        self.audit_trail = audit_trail
        self.lock_timeout = lock_timeout
        self.logger = get_logger("garden.status")

    async def set_status(
        self,
        entry_id: str,
        new_status: Union[EntryStatus, str],
        admin_notes: Optional[str] = None,
        processed_by: Optional[str] = None
    ) -> LedgerEntry:
        """
        Move an entry to a new status and apply its balance effect

        Args:
            entry_id: Ledger entry to update
            new_status: Target status
            admin_notes: Notes stored on the entry
            processed_by: Administrator making the change

        Returns:
            The updated entry

        Raises:
            ValidationError: If the status is not recognized
            EntryNotFoundError: If the entry does not exist
            InvalidTransitionError: If the entry already holds another terminal status
            LockTimeoutError: If the account lease was not granted in time
            PersistenceFailure: If a write failed or lost a version race
        """
        status = parse_status(new_status)
        entry = await self.ledger.require(entry_id)
        return await self._transition(entry.account_id, entry_id, status, admin_notes, processed_by)

    async def approve(
        self,
        entry_id: str,
        processed_by: Optional[str] = None,
        admin_notes: Optional[str] = None
    ) -> LedgerEntry:
        """Complete a pending entry, crediting purchases and exchanges too"""
        entry = await self.ledger.require(entry_id)
        if not entry.is_pending:
            raise InvalidTransitionError(entry_id, entry.status.value, EntryStatus.COMPLETED.value)
        return await self._transition(
            entry.account_id, entry_id, EntryStatus.COMPLETED, admin_notes, processed_by,
            approval=True
        )

    async def _transition(
        self,
        account_id: str,
        entry_id: str,
        status: EntryStatus,
        admin_notes: Optional[str],
        processed_by: Optional[str],
        approval: bool = False
    ) -> LedgerEntry:
        try:
            return await self._transition_under_lease(
                account_id, entry_id, status, admin_notes, processed_by, approval
            )
        except ConcurrentModificationError as e:
            raise PersistenceFailure(f"Ledger entry {entry_id} changed during the status update", e) from e

    async def _transition_under_lease(
        self,
        account_id: str,
        entry_id: str,
        status: EntryStatus,
        admin_notes: Optional[str],
        processed_by: Optional[str],
        approval: bool = False
    ) -> LedgerEntry:
        async with self.locks.lease(account_lock_key(account_id), self.lock_timeout):
            entry = await self.ledger.require(entry_id)

            if entry.is_terminal:
                if entry.status != status or approval:
                    raise InvalidTransitionError(entry_id, entry.status.value, status.value)
                log_action(
                    self.logger, "info", f"Entry already {status.value}",
                    account_id=account_id, entry_id=entry_id, action="set_status_replay"
                )
                if entry.balance_effect == BalanceEffect.PENDING:
                    await self.apply_effect(entry, balance_deltas(entry, status, approval=True))
                return entry

            if status == EntryStatus.PENDING:
                if admin_notes is not None:
                    entry.admin_notes = admin_notes
                    await self.ledger.save(entry)
                return entry

            deltas = balance_deltas(entry, status, approval)
            previous = entry.status
            entry.status = status
            if admin_notes is not None:
                entry.admin_notes = admin_notes
            if processed_by:
                entry.processed_by = processed_by
            if status in (EntryStatus.COMPLETED, EntryStatus.CANCELLED):
                entry.processed_at = datetime.now(timezone.utc)
            entry.balance_effect = BalanceEffect.PENDING if deltas else BalanceEffect.NONE
            await self.ledger.save(entry)

            log_action(
                self.logger, "info", f"Entry {previous.value} -> {status.value}",
                account_id=account_id, entry_id=entry_id, action="set_status",
                extra={"entry_type": entry.entry_type.value, "processed_by": processed_by}
            )
            if self.audit_trail:
                await self.audit_trail.try_log_event(
                    AuditEventType.STATUS_CHANGED, "ledger_entry", entry_id,
                    {"from": previous.value, "to": status.value, "account_id": account_id},
                    actor=processed_by
                )

            if deltas:
                await self.apply_effect(entry, deltas)

        return entry

    async def apply_effect(self, entry: LedgerEntry, deltas: Dict[str, Decimal]) -> LedgerEntry:
        """
        Land the balance effect of a terminal entry exactly once.

        The caller holds the account lease. A journal record for the entry on
        the balance means the effect is already there.
        """
        def credit(balance: AccountBalance) -> Optional[bool]:
            if balance.has_in_flight(entry.id, "credit"):
                return False
            balance.apply_deltas(deltas)
            balance.record_in_flight(entry.id, "credit", deltas)
            return None

        def clear(balance: AccountBalance) -> Optional[bool]:
            return None if balance.clear_in_flight(entry.id, "credit") else False

        try:
            await self.balances.update(entry.account_id, credit)
        except Exception:
            log_action(
                self.logger, "error", "Balance effect not applied; left for reconciliation",
                account_id=entry.account_id, entry_id=entry.id, action="apply_effect_failed",
                exc_info=True
            )
            raise

        entry.balance_effect = BalanceEffect.APPLIED
        await self.ledger.save(entry)
        try:
            await self.balances.update(entry.account_id, clear)
        except LedgerError:
            log_action(
                self.logger, "warning", "Could not clear credit journal; left for reconciliation",
                account_id=entry.account_id, entry_id=entry.id, action="journal_clear_failed"
            )

        refund = is_withdrawal_class(entry.entry_type)
        log_action(
            self.logger, "info", "Balance refunded" if refund else "Balance credited",
            account_id=entry.account_id, entry_id=entry.id,
            action="refund" if refund else "credit",
            extra={k: str(v) for k, v in deltas.items()}
        )
        if self.audit_trail:
            await self.audit_trail.try_log_event(
                AuditEventType.BALANCE_REFUNDED if refund else AuditEventType.BALANCE_CREDITED,
                "balance", entry.account_id,
                {"entry_id": entry.id, "deltas": deltas}
            )
        return entry
