"""
Tests for ledger entries and the ledger store
"""

import pytest
import pytest_asyncio
import asyncio
from decimal import Decimal

from garden_ledger.async_storage import AsyncInMemoryStorage
from garden_ledger.errors import (
    ConcurrentModificationError, EntryNotFoundError, PersistenceFailure,
)
from garden_ledger.ledger import (
    BalanceEffect, EntryStatus, EntryType, LedgerEntry, LedgerStore,
    is_deposit_class, is_withdrawal_class, new_entry,
)


class TestEntryClassification:

    @pytest.mark.parametrize("entry_type", [
        EntryType.DEPOSIT, EntryType.DEPOSIT_CRYPTO,
        EntryType.REFERRAL_BONUS, EntryType.TRANSFER_RECEIVED,
    ])
    def test_deposit_class(self, entry_type):
        """Test deposit-class entry types"""
        assert is_deposit_class(entry_type)
        assert not is_withdrawal_class(entry_type)

    @pytest.mark.parametrize("entry_type", [
        EntryType.WITHDRAWAL, EntryType.WITHDRAWAL_DIAMOND, EntryType.WITHDRAWAL_BVR,
    ])
    def test_withdrawal_class(self, entry_type):
        """Test withdrawal-class entry types"""
        assert is_withdrawal_class(entry_type)
        assert not is_deposit_class(entry_type)

    @pytest.mark.parametrize("entry_type", [
        EntryType.EXCHANGE, EntryType.FLOWER_PURCHASE, EntryType.ADMIN_CREDIT,
    ])
    def test_neither(self, entry_type):
        """Test types that are neither deposits nor withdrawals"""
        assert not is_deposit_class(entry_type)
        assert not is_withdrawal_class(entry_type)

    def test_terminal_statuses(self):
        """Test terminal statuses"""
        assert not EntryStatus.PENDING.is_terminal
        assert EntryStatus.COMPLETED.is_terminal
        assert EntryStatus.CANCELLED.is_terminal
        assert EntryStatus.FAILED.is_terminal


class TestLedgerEntry:

    def test_serialization_keeps_decimals_exact(self):
        """Test entry serialization of amounts"""
        entry = new_entry(
            "a1", EntryType.DEPOSIT_CRYPTO, Decimal("47.5"), "USDT",
            usd_amount=Decimal("47.5"), flowers_amount=Decimal("4750"),
            network="TRC20", account_email="player@example.com",
        )
        data = entry.to_dict()
        assert data["entry_type"] == "deposit_crypto"
        assert data["status"] == "pending"
        assert data["balance_effect"] == "none"
        assert data["usd_amount"] == "47.5"

        restored = LedgerEntry.from_dict(data)
        assert restored.amount == Decimal("47.5")
        assert restored.usd_amount == Decimal("47.5")
        assert restored.tickets_amount is None
        assert restored.processed_at is None
        assert restored.network == "TRC20"


class TestLedgerStore:

    @pytest_asyncio.fixture
    async def store(self):
        return LedgerStore(AsyncInMemoryStorage())

    @pytest.mark.asyncio
    async def test_create_and_require(self, store):
        """Test entry creation and lookup"""
        entry = await store.create(new_entry("a1", EntryType.WITHDRAWAL, Decimal("300"), "USD"))
        assert entry.version == 1
        loaded = await store.require(entry.id)
        assert loaded.amount == Decimal("300")
        assert loaded.is_pending

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        """Test creating an entry id twice"""
        entry = new_entry("a1", EntryType.DEPOSIT, Decimal("1"), "USD")
        await store.create(entry)
        with pytest.raises(PersistenceFailure):
            await store.create(entry)

    @pytest.mark.asyncio
    async def test_require_missing(self, store):
        """Test lookup of a missing entry"""
        with pytest.raises(EntryNotFoundError):
            await store.require("missing")

    @pytest.mark.asyncio
    async def test_stale_save_rejected(self, store):
        """Test saving a stale entry copy"""
        entry = await store.create(new_entry("a1", EntryType.WITHDRAWAL, Decimal("1"), "USD"))
        first = await store.require(entry.id)
        second = await store.require(entry.id)

        first.status = EntryStatus.CANCELLED
        await store.save(first)

        second.status = EntryStatus.COMPLETED
        with pytest.raises(ConcurrentModificationError):
            await store.save(second)
        assert second.version == 1
        assert (await store.require(entry.id)).status == EntryStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_storage_error_becomes_persistence_failure(self, store, monkeypatch):
        """Test storage errors are wrapped"""
        async def broken(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(store.storage, "conditional_save", broken)
        with pytest.raises(PersistenceFailure) as exc_info:
            await store.create(new_entry("a1", EntryType.DEPOSIT, Decimal("1"), "USD"))
        assert isinstance(exc_info.value.cause, OSError)

    @pytest.mark.asyncio
    async def test_list_for_account_most_recent_first(self, store):
        """Test account listing order"""
        ids = []
        for i in range(5):
            entry = await store.create(new_entry("a1", EntryType.DEPOSIT, Decimal(i), "USD"))
            ids.append(entry.id)
            await asyncio.sleep(0.001)
        await store.create(new_entry("a2", EntryType.DEPOSIT, Decimal("1"), "USD"))

        entries = await store.list_for_account("a1", limit=3)
        assert [e.id for e in entries] == list(reversed(ids))[:3]

    @pytest.mark.asyncio
    async def test_pending_and_history(self, store):
        """Test pending and history listings"""
        pending = await store.create(new_entry("a1", EntryType.DEPOSIT, Decimal("1"), "USD"))
        done = await store.create(new_entry("a1", EntryType.DEPOSIT, Decimal("2"), "USD"))
        failed = await store.create(new_entry("a1", EntryType.WITHDRAWAL, Decimal("3"), "USD"))

        done.status = EntryStatus.COMPLETED
        await store.save(done)
        await asyncio.sleep(0.001)
        failed.status = EntryStatus.FAILED
        await store.save(failed)

        assert [e.id for e in await store.list_pending()] == [pending.id]
        assert [e.id for e in await store.list_history()] == [failed.id, done.id]

    @pytest.mark.asyncio
    async def test_find_by_idempotency_key_and_unsettled(self, store):
        """Test idempotency and unsettled lookups"""
        entry = await store.create(new_entry(
            "a1", EntryType.WITHDRAWAL, Decimal("1"), "USD", idempotency_key="k1"
        ))
        assert (await store.find_by_idempotency_key("a1", "k1")).id == entry.id
        assert await store.find_by_idempotency_key("a2", "k1") is None

        entry.status = EntryStatus.CANCELLED
        entry.balance_effect = BalanceEffect.PENDING
        await store.save(entry)
        assert [e.id for e in await store.list_unsettled()] == [entry.id]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Test entry deletion"""
        entry = await store.create(new_entry("a1", EntryType.WITHDRAWAL, Decimal("1"), "USD"))
        assert await store.delete(entry.id)
        assert await store.get(entry.id) is None
