"""
Withdrawal Orchestrator

Debits an account and records the matching pending ledger entry as one unit.
The two writes land in different documents, so the pair is run as a saga
under the account lease:

1. deduct the amount from the balance and journal the debit in the
   balance's ``in_flight`` map, in a single conditional write;
2. create the pending ledger entry;
3. drop the journal record.

If step 2 fails the debit is compensated against freshly loaded balance
state. If the compensation fails as well the journal record is left behind
for the reconciliation sweep.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from .audit import AuditTrail, AuditEventType
from .balances import AccountBalance, BalanceStore, balance_field_for_currency, to_decimal, ZERO
from .errors import (
    CompensationFailedError, InsufficientFundsError, LedgerError, PersistenceFailure,
    ValidationError,
)
from .ledger import EntryType, LedgerEntry, LedgerStore, is_withdrawal_class, new_entry
from .locks import AccountLockManager, account_lock_key
from .notifications import NotificationDispatcher
from .logging_config import get_logger, log_action


@dataclass
class WithdrawalResult:
    """The pending entry and what is left on the account"""
    entry: LedgerEntry
    balances: Dict[str, Decimal] = field(default_factory=dict)
    replayed: bool = False

    @property
    def remaining_flowers(self) -> Decimal:
        return self.balances.get("flowers", ZERO)

    @property
    def remaining_bvr(self) -> Decimal:
        return self.balances.get("bvr_coins", ZERO)


class WithdrawalOrchestrator:
    """Submits withdrawals"""

    def __init__(
        self,
        balances: BalanceStore,
        ledger: LedgerStore,
        locks: AccountLockManager,
        audit_trail: Optional[AuditTrail] = None,
        notifier: Optional[NotificationDispatcher] = None,
        lock_timeout: float = 5.0
    ):
        self.balances = balances
        self.ledger = ledger
        self.locks = locks
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.lock_timeout = lock_timeout
        self.logger = get_logger("garden.withdrawals")

    async def submit_withdrawal(
        self,
        account_id: str,
        amount: Union[Decimal, int, float, str],
        currency: str,
        address: Optional[str] = None,
        crypto_address: Optional[str] = None,
        entry_type: Union[EntryType, str] = EntryType.WITHDRAWAL,
        network: Optional[str] = None,
        wallet_address: Optional[str] = None,
        usd_amount: Optional[Decimal] = None,
        fees: Optional[Decimal] = None,
        received_amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
        account_email: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> WithdrawalResult:
        """
        Debit the account and record a pending withdrawal entry

        Args:
            account_id: Account to debit
            amount: Quantity to withdraw, in units of the debited field
            currency: "BVR" debits bvr_coins, anything else debits flowers
            address: Fiat or generic destination address
            crypto_address: Crypto destination address
            entry_type: One of the withdrawal types
            account_email: Contact used for the administrator notification
            idempotency_key: Repeated submissions with the same key return
                the first entry instead of debiting again

        Returns:
            WithdrawalResult with the entry and the remaining balances

        Raises:
            ValidationError: Bad amount, type or missing destination
            AccountNotFoundError: No balance document for the account
            InsufficientFundsError: Not enough of the debited currency
            LockTimeoutError: The account lease was not granted in time
            PersistenceFailure: The debit was rolled back after a write failure
            CompensationFailedError: The rollback failed as well
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError("Withdrawal amount must be positive")
        if not currency:
            raise ValidationError("Currency is required")
        if isinstance(entry_type, str):
            try:
                entry_type = EntryType(entry_type)
            except ValueError:
                raise ValidationError(f"Unknown entry type: {entry_type}") from None
        if not is_withdrawal_class(entry_type):
            raise ValidationError(f"{entry_type.value} is not a withdrawal type")
        if not (address or crypto_address or wallet_address):
            raise ValidationError("A destination address is required")

        field_name = balance_field_for_currency(currency)

        if idempotency_key:
            replay = await self._replay(account_id, idempotency_key)
            if replay is not None:
                return replay

        # Cheap pre-check; repeated under the lease
        balance = await self.balances.require(account_id)
        available = balance.get(field_name)
        if available < amount:
            raise InsufficientFundsError(field_name, available, amount)

        entry = new_entry(
            account_id, entry_type, amount, currency,
            address=address,
            crypto_address=crypto_address,
            network=network,
            wallet_address=wallet_address,
            usd_amount=to_decimal(usd_amount) if usd_amount is not None else None,
            fees=to_decimal(fees) if fees is not None else None,
            received_amount=to_decimal(received_amount) if received_amount is not None else None,
            notes=notes,
            account_email=account_email,
            idempotency_key=idempotency_key,
        )
        deltas = {field_name: -amount}

        async with self.locks.lease(account_lock_key(account_id), self.lock_timeout):
            if idempotency_key:
                replay = await self._replay(account_id, idempotency_key)
                if replay is not None:
                    return replay

            debited = await self._debit(account_id, entry.id, deltas)

            try:
                await self.ledger.create(entry)
            except LedgerError as e:
                await self._compensate(entry, e)

            balance = await self._confirm(account_id, entry.id) or debited

        log_action(
            self.logger, "info", f"Withdrawal submitted: {amount} {currency}",
            account_id=account_id, entry_id=entry.id, action="submit_withdrawal",
            extra={"entry_type": entry_type.value, "field": field_name}
        )
        if self.audit_trail:
            await self.audit_trail.try_log_event(
                AuditEventType.WITHDRAWAL_SUBMITTED, "ledger_entry", entry.id,
                {
                    "account_id": account_id,
                    "entry_type": entry_type.value,
                    "amount": amount,
                    "currency": currency,
                    "field": field_name,
                }
            )
        if self.notifier:
            self.notifier.withdrawal_submitted(entry, account_email)

        return WithdrawalResult(entry=entry, balances=balance.snapshot())

    async def _replay(self, account_id: str, idempotency_key: str) -> Optional[WithdrawalResult]:
        existing = await self.ledger.find_by_idempotency_key(account_id, idempotency_key)
        if existing is None:
            return None
        log_action(
            self.logger, "info", "Duplicate withdrawal submission, returning original entry",
            account_id=account_id, entry_id=existing.id, action="submit_withdrawal_replay"
        )
        balance = await self.balances.require(account_id)
        return WithdrawalResult(entry=existing, balances=balance.snapshot(), replayed=True)

    async def _debit(self, account_id: str, entry_id: str, deltas: Dict[str, Decimal]) -> AccountBalance:
        def deduct(balance: AccountBalance) -> None:
            balance.apply_deltas(deltas)
            balance.record_in_flight(entry_id, "debit", deltas)

        return await self.balances.update(account_id, deduct)

    async def _confirm(self, account_id: str, entry_id: str) -> Optional[AccountBalance]:
        def clear(balance: AccountBalance) -> Optional[bool]:
            if balance.clear_in_flight(entry_id, "debit") is None:
                return False
            return None

        try:
            return await self.balances.update(account_id, clear)
        except LedgerError:
            log_action(
                self.logger, "warning", "Could not clear withdrawal journal; left for reconciliation",
                account_id=account_id, entry_id=entry_id, action="journal_clear_failed",
                exc_info=True
            )
            return None

    async def _compensate(self, entry: LedgerEntry, cause: LedgerError) -> None:
        """Undo the debit of a withdrawal whose entry could not be written; always raises"""
        log_action(
            self.logger, "error", f"Ledger write failed, compensating debit: {cause}",
            account_id=entry.account_id, entry_id=entry.id, action="compensate_withdrawal"
        )

        def restore(balance: AccountBalance) -> Optional[bool]:
            operation = balance.clear_in_flight(entry.id, "debit")
            if operation is None:
                return False
            balance.apply_deltas({k: -v for k, v in operation.deltas.items()})
            return None

        try:
            # Never restore while the entry may still exist
            await self.ledger.delete(entry.id)
            await self.balances.update(entry.account_id, restore)
        except Exception as e:
            log_action(
                self.logger, "critical",
                "Compensation failed; balance debited without a ledger entry",
                account_id=entry.account_id, entry_id=entry.id,
                action="compensation_failed",
                extra={"amount": str(entry.amount), "currency": entry.currency},
                exc_info=True
            )
            if self.audit_trail:
                await self.audit_trail.try_log_event(
                    AuditEventType.COMPENSATION_FAILED, "ledger_entry", entry.id,
                    {
                        "account_id": entry.account_id,
                        "amount": entry.amount,
                        "currency": entry.currency,
                        "error": str(e),
                    }
                )
            raise CompensationFailedError(
                f"Withdrawal {entry.id} could not be rolled back; reconciliation required", e
            ) from e

        if self.audit_trail:
            await self.audit_trail.try_log_event(
                AuditEventType.WITHDRAWAL_COMPENSATED, "ledger_entry", entry.id,
                {"account_id": entry.account_id, "amount": entry.amount, "currency": entry.currency}
            )
        raise PersistenceFailure(
            f"Withdrawal {entry.id} was not recorded; the debit has been reversed", cause
        ) from cause
