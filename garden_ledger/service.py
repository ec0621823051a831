"""
Ledger service: every component wired to one store from configuration.
"""

from typing import Any, Dict, List, Optional

from .async_storage import AsyncStorageInterface, AsyncPostgreSQLStorage, create_async_storage
from .audit import AuditTrail
from .balances import AccountBalance, BalanceStore
from .config import LedgerConfig, get_config
from .deposits import DepositManager
from .ledger import LedgerEntry, LedgerStore
from .locks import AccountLockManager, InMemoryLockManager, StorageLeaseLockManager
from .notifications import (
    LogNotificationGateway, NotificationDispatcher, NotificationGateway,
    WebhookNotificationGateway,
)
from .reconciliation import ReconciliationReport, ReconciliationSweeper
from .status import StatusTransitionProcessor
from .withdrawals import WithdrawalOrchestrator
from .logging_config import get_logger


def create_lock_manager(settings: LedgerConfig, storage: AsyncStorageInterface) -> AccountLockManager:
    backend = settings.lock_backend.lower()
    if backend == "memory":
        return InMemoryLockManager(settings.lock_poll_interval_seconds, settings.lock_lease_seconds)
    if backend == "storage":
        return StorageLeaseLockManager(
            storage, settings.lock_poll_interval_seconds, settings.lock_lease_seconds
        )
    raise ValueError(f"Unknown lock backend: {settings.lock_backend}")


def create_notification_gateway(settings: LedgerConfig) -> NotificationGateway:
    if settings.notification_webhook_url:
        return WebhookNotificationGateway(
            settings.notification_webhook_url, timeout=settings.notification_timeout
        )
    return LogNotificationGateway()


class LedgerService:
    """Ledger components initialized against a single store"""

    def __init__(
        self,
        storage: AsyncStorageInterface,
        settings: Optional[LedgerConfig] = None,
        locks: Optional[AccountLockManager] = None,
        notification_gateway: Optional[NotificationGateway] = None
    ):
        self.config = settings or get_config()
        self.storage = storage
        self.logger = get_logger("garden.service")

        self.locks = locks or create_lock_manager(self.config, storage)
        self.balances = BalanceStore(storage, max_retries=self.config.max_write_retries)
        self.ledger = LedgerStore(storage)
        self.audit_trail = AuditTrail(storage) if self.config.enable_audit_logging else None
        self.gateway = notification_gateway or create_notification_gateway(self.config)
        self.notifier = NotificationDispatcher(self.gateway, self.config.admin_email)

        timeout = self.config.lock_timeout_seconds
        self.status_processor = StatusTransitionProcessor(
            self.balances, self.ledger, self.locks, self.audit_trail, timeout
        )
        self.withdrawals = WithdrawalOrchestrator(
            self.balances, self.ledger, self.locks, self.audit_trail, self.notifier, timeout
        )
        self.deposits = DepositManager(
            self.balances, self.ledger, self.locks, self.status_processor, self.audit_trail, timeout
        )
        self.sweeper = ReconciliationSweeper(
            self.balances, self.ledger, self.locks, self.status_processor, self.audit_trail, timeout
        )

    @classmethod
    async def from_config(cls, settings: Optional[LedgerConfig] = None) -> 'LedgerService':
        """Build the store named by the configuration and wire the service to it"""
        settings = settings or get_config()
        storage = create_async_storage(
            settings.storage_type, settings.database_url, settings.database_pool_size
        )
        if isinstance(storage, AsyncPostgreSQLStorage):
            await storage.initialize()
        return cls(storage, settings)

    async def close(self) -> None:
        await self.notifier.drain()
        await self.gateway.close()
        await self.storage.close()

    # Commands

    async def open_account(self, account_id: str, **amounts: Any) -> AccountBalance:
        return await self.deposits.open_account(account_id, **amounts)

    async def submit_withdrawal(self, account_id: str, amount: Any, currency: str, **details: Any):
        return await self.withdrawals.submit_withdrawal(account_id, amount, currency, **details)

    async def record_entry(self, account_id: str, entry_type: Any, amount: Any, currency: str,
                           **details: Any) -> LedgerEntry:
        return await self.deposits.record_entry(account_id, entry_type, amount, currency, **details)

    async def set_status(self, entry_id: str, new_status: Any, admin_notes: Optional[str] = None,
                         processed_by: Optional[str] = None) -> LedgerEntry:
        return await self.status_processor.set_status(entry_id, new_status, admin_notes, processed_by)

    async def approve(self, entry_id: str, processed_by: Optional[str] = None,
                      admin_notes: Optional[str] = None) -> LedgerEntry:
        return await self.status_processor.approve(entry_id, processed_by, admin_notes)

    async def admin_credit(self, account_id: str, **kwargs: Any) -> LedgerEntry:
        return await self.deposits.admin_credit(account_id, **kwargs)

    async def reconcile(self, grace_seconds: Optional[float] = None) -> ReconciliationReport:
        if grace_seconds is None:
            grace_seconds = self.config.reconciliation_grace_seconds
        return await self.sweeper.run_once(grace_seconds)

    # Queries

    async def get_balance(self, account_id: str) -> AccountBalance:
        return await self.balances.require(account_id)

    async def get_entry(self, entry_id: str) -> LedgerEntry:
        return await self.ledger.require(entry_id)

    async def list_account_entries(self, account_id: str, limit: Optional[int] = None) -> List[LedgerEntry]:
        return await self.ledger.list_for_account(account_id, limit or self.config.account_history_limit)

    async def list_pending(self, limit: Optional[int] = None) -> List[LedgerEntry]:
        return await self.ledger.list_pending(limit or self.config.admin_list_limit)

    async def list_history(self, limit: Optional[int] = None) -> List[LedgerEntry]:
        return await self.ledger.list_history(limit or self.config.admin_list_limit)

    async def health(self) -> Dict[str, Any]:
        result = {
            "status": "healthy",
            "storage": self.config.storage_type,
            "lock_backend": self.config.lock_backend,
            "notifications": self.notifier.stats(),
        }
        if self.audit_trail:
            integrity = await self.audit_trail.verify_integrity()
            result["audit_chain_valid"] = integrity["valid"]
            if not integrity["valid"]:
                result["status"] = "degraded"
        return result
