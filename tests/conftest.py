"""
Shared fixtures for the ledger test suite
"""

import pytest
import pytest_asyncio

from garden_ledger.async_storage import AsyncInMemoryStorage
from garden_ledger.config import LedgerConfig
from garden_ledger.locks import InMemoryLockManager
from garden_ledger.service import LedgerService


@pytest.fixture
def settings():
    """Fast leases and no reconciliation grace so tests stay quick"""
    return LedgerConfig(
        storage_type="memory",
        lock_backend="memory",
        lock_timeout_seconds=1.0,
        lock_poll_interval_seconds=0.01,
        lock_lease_seconds=30.0,
        reconciliation_grace_seconds=0.0,
        log_format="text",
    )


@pytest_asyncio.fixture
async def service(settings):
    """Ledger service over in-memory storage with the log notification gateway"""
    ledger_service = LedgerService(AsyncInMemoryStorage(), settings)
    yield ledger_service
    await ledger_service.close()


@pytest_asyncio.fixture
async def funded(service):
    """Service with one account holding 1000 flowers, 20 tickets and 50 BVR"""
    await service.open_account("player-1", flowers=1000, tickets=20, bvr_coins=50)
    return service
