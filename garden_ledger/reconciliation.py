"""
Reconciliation Sweep

Finishes or undoes balance effects left half-done by a crash or by a failed
compensation. Two sources of work:

- ``in_flight`` journal records on balances. A debit whose ledger entry
  exists is confirmed; a debit whose entry never got written is restored. A
  credit is confirmed and its entry marked applied.
- Terminal entries whose ``balance_effect`` is still pending with no journal
  record: the effect never reached the balance and is applied now.

Every account is repaired under its lease, so the sweep never races a
withdrawal or a status change. Records younger than the grace period are
left alone.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .audit import AuditTrail, AuditEventType
from .balances import AccountBalance, BalanceStore, InFlightOperation
from .errors import LedgerError
from .ledger import BalanceEffect, LedgerStore
from .locks import AccountLockManager, account_lock_key
from .status import StatusTransitionProcessor, balance_deltas
from .logging_config import get_logger, log_action


@dataclass
class ReconciliationReport:
    """Outcome of one sweep"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    accounts_scanned: int = 0
    debits_confirmed: int = 0
    debits_restored: int = 0
    credits_confirmed: int = 0
    effects_applied: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def repairs(self) -> int:
        return (self.debits_confirmed + self.debits_restored
                + self.credits_confirmed + self.effects_applied)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "accounts_scanned": self.accounts_scanned,
            "debits_confirmed": self.debits_confirmed,
            "debits_restored": self.debits_restored,
            "credits_confirmed": self.credits_confirmed,
            "effects_applied": self.effects_applied,
            "skipped": self.skipped,
            "repairs": self.repairs,
            "errors": list(self.errors),
        }


class ReconciliationSweeper:
    """Repairs half-done sagas across all accounts"""

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
        self.logger = get_logger("garden.reconciliation")

    async def run_once(self, grace_seconds: float = 60.0) -> ReconciliationReport:
        """
        Sweep every account with unconfirmed work older than ``grace_seconds``

        Failures on one account are recorded in the report and do not stop
        the sweep.
        """
        report = ReconciliationReport(started_at=datetime.now(timezone.utc))
        cutoff = report.started_at - timedelta(seconds=grace_seconds)

        account_ids: Set[str] = set()
        for balance in await self.balances.list_with_in_flight():
            account_ids.add(balance.account_id)
        for entry in await self.ledger.list_unsettled():
            account_ids.add(entry.account_id)

        for account_id in sorted(account_ids):
            report.accounts_scanned += 1
            try:
                async with self.locks.lease(account_lock_key(account_id), self.lock_timeout):
                    await self._repair_journal(account_id, cutoff, report)
                    await self._repair_unsettled(account_id, cutoff, report)
            except LedgerError as e:
                log_action(
                    self.logger, "error", f"Reconciliation failed: {e}",
                    account_id=account_id, action="reconcile_failed"
                )
                report.errors.append({"account_id": account_id, "error": str(e)})

        report.finished_at = datetime.now(timezone.utc)
        log_action(
            self.logger, "info" if not report.errors else "warning",
            f"Reconciliation finished: {report.repairs} repairs, {len(report.errors)} errors",
            action="reconcile", extra=report.to_dict()
        )
        return report

    async def _repair_journal(self, account_id: str, cutoff: datetime, report: ReconciliationReport) -> None:
        balance = await self.balances.require(account_id)
        for operation in list(balance.in_flight.values()):
            if operation.recorded_at > cutoff:
                report.skipped += 1
                continue

            entry = await self.ledger.get(operation.entry_id)
            if operation.kind == "debit" and entry is None:
                await self.balances.update(account_id, self._restorer(operation))
                report.debits_restored += 1
                await self._record_repair("debit_restored", account_id, operation)
                continue

            if operation.kind == "debit":
                report.debits_confirmed += 1
            else:
                if entry is None:
                    log_action(
                        self.logger, "warning", "Credit journal without a ledger entry",
                        account_id=account_id, entry_id=operation.entry_id, action="reconcile"
                    )
                elif entry.balance_effect == BalanceEffect.PENDING:
                    entry.balance_effect = BalanceEffect.APPLIED
                    await self.ledger.save(entry)
                report.credits_confirmed += 1

            await self.balances.update(account_id, self._clearer(operation))
            await self._record_repair(f"{operation.kind}_confirmed", account_id, operation)

    async def _repair_unsettled(self, account_id: str, cutoff: datetime, report: ReconciliationReport) -> None:
        balance = await self.balances.require(account_id)
        entries = [e for e in await self.ledger.list_unsettled() if e.account_id == account_id]
        for entry in entries:
            if balance.has_in_flight(entry.id, "credit") or entry.updated_at > cutoff:
                report.skipped += 1
                continue
            # An unsettled purchase or exchange can only come from an approval
            deltas = balance_deltas(entry, entry.status, approval=True)
            await self.effects.apply_effect(entry, deltas)
            report.effects_applied += 1
            await self._record_repair(
                "effect_applied", account_id,
                InFlightOperation(entry.id, "credit", deltas, report.started_at)
            )

    @staticmethod
    def _clearer(operation: InFlightOperation):
        def clear(balance: AccountBalance) -> Optional[bool]:
            return None if balance.clear_in_flight(operation.entry_id, operation.kind) else False
        return clear

    @staticmethod
    def _restorer(operation: InFlightOperation):
        def restore(balance: AccountBalance) -> Optional[bool]:
            current = balance.clear_in_flight(operation.entry_id, operation.kind)
            if current is None:
                return False
            balance.apply_deltas({k: -v for k, v in current.deltas.items()})
            return None
        return restore

    async def _record_repair(self, repair: str, account_id: str, operation: InFlightOperation) -> None:
        log_action(
            self.logger, "warning", f"Reconciliation repair: {repair}",
            account_id=account_id, entry_id=operation.entry_id, action="reconcile_repair",
            extra={k: str(v) for k, v in operation.deltas.items()}
        )
        if self.audit_trail:
            await self.audit_trail.try_log_event(
                AuditEventType.RECONCILIATION_REPAIR, "balance", account_id,
                {"repair": repair, "entry_id": operation.entry_id, "deltas": operation.deltas}
            )
