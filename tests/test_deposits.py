"""
Tests for account opening, entry recording and administrative credits
"""

import asyncio
import pytest
from decimal import Decimal

from garden_ledger.audit import AuditEventType
from garden_ledger.errors import AccountNotFoundError, ValidationError
from garden_ledger.ledger import BalanceEffect, EntryStatus, EntryType


class TestOpenAccount:

    @pytest.mark.asyncio
    async def test_open_account(self, service):
        """Test opening an account"""
        balance = await service.open_account("player-2", flowers=10)
        assert balance.flowers == Decimal("10")
        assert balance.tickets == Decimal("0")

        events = await service.audit_trail.get_events_for_entity("balance", "player-2")
        assert events[0].event_type == AuditEventType.ACCOUNT_OPENED

    @pytest.mark.asyncio
    async def test_account_id_required(self, service):
        """Test opening an account without an id"""
        with pytest.raises(ValidationError):
            await service.open_account("")

    @pytest.mark.asyncio
    async def test_unknown_account_balance(self, service):
        """Test balance of an unknown account"""
        with pytest.raises(AccountNotFoundError):
            await service.get_balance("nobody")


class TestRecordEntry:

    @pytest.mark.asyncio
    async def test_records_pending_without_effect(self, funded):
        """Test recorded deposits do not touch the balance"""
        entry = await funded.record_entry(
            "player-1", "deposit", 25, "USD", usd_amount=25, flowers_amount=2500
        )

        assert entry.status == EntryStatus.PENDING
        assert entry.entry_type == EntryType.DEPOSIT
        assert entry.flowers_amount == Decimal("2500")
        assert entry.balance_effect == BalanceEffect.NONE
        assert (await funded.get_balance("player-1")).flowers == Decimal("1000")
        assert [e.id for e in await funded.list_pending()] == [entry.id]

    @pytest.mark.asyncio
    async def test_rejects_withdrawal_types(self, funded):
        """Test withdrawal types are refused"""
        for entry_type in ("withdrawal", "withdrawal_bvr", "withdrawal_diamond"):
            with pytest.raises(ValidationError):
                await funded.record_entry("player-1", entry_type, 10, "USD")

    @pytest.mark.asyncio
    async def test_rejects_admin_credit_type(self, funded):
        """Test admin_credit type is refused"""
        with pytest.raises(ValidationError):
            await funded.record_entry("player-1", "admin_credit", 10, "FLOWERS")

    @pytest.mark.asyncio
    async def test_rejects_unknown_type(self, funded):
        """Test unknown entry types are refused"""
        with pytest.raises(ValidationError):
            await funded.record_entry("player-1", "gift", 10, "USD")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"amount": -1},
        {"amount": 1, "flowers_amount": -5},
        {"amount": 1, "tickets_amount": -1},
        {"amount": 1, "currency": ""},
    ])
    async def test_rejects_bad_amounts(self, funded, kwargs):
        """Test amount validation"""
        kwargs = dict(kwargs)
        amount = kwargs.pop("amount")
        currency = kwargs.pop("currency", "USD")
        with pytest.raises(ValidationError):
            await funded.record_entry("player-1", "deposit", amount, currency, **kwargs)
        assert await funded.list_pending() == []

    @pytest.mark.asyncio
    async def test_requires_existing_account(self, service):
        """Test recording for an unknown account"""
        with pytest.raises(AccountNotFoundError):
            await service.record_entry("nobody", "deposit", 10, "USD")

    @pytest.mark.asyncio
    async def test_idempotency_key(self, funded):
        """Test resubmitting an entry with the same key"""
        first = await funded.record_entry(
            "player-1", "deposit", 10, "USD", flowers_amount=100, idempotency_key="dep-1"
        )
        second = await funded.record_entry(
            "player-1", "deposit", 10, "USD", flowers_amount=100, idempotency_key="dep-1"
        )
        assert first.id == second.id
        assert len(await funded.list_account_entries("player-1")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_submissions_with_same_key(self, funded):
        """Test that racing submissions with one key record and credit a single entry"""
        entries = await asyncio.gather(*[
            funded.record_entry(
                "player-1", "deposit", 10, "USD", flowers_amount=100, idempotency_key="dep-1"
            )
            for _ in range(2)
        ])

        assert entries[0].id == entries[1].id
        assert len(await funded.list_account_entries("player-1")) == 1

        for entry in entries:
            await funded.set_status(entry.id, "completed")
        assert (await funded.get_balance("player-1")).flowers == Decimal("1100")


class TestAdminCredit:

    @pytest.mark.asyncio
    async def test_single_currency_credit(self, funded):
        """Test crediting a single currency"""
        entry = await funded.admin_credit(
            "player-1", flowers=250, reason="event prize", processed_by="admin-7"
        )

        assert entry.entry_type == EntryType.ADMIN_CREDIT
        assert entry.status == EntryStatus.COMPLETED
        assert entry.balance_effect == BalanceEffect.APPLIED
        assert entry.amount == Decimal("250")
        assert entry.currency == "FLOWERS"
        assert entry.processed_at is not None
        assert entry.notes == "event prize"

        balance = await funded.get_balance("player-1")
        assert balance.flowers == Decimal("1250")
        assert balance.in_flight == {}

    @pytest.mark.asyncio
    async def test_bvr_credit(self, funded):
        """Test crediting BVR coins"""
        entry = await funded.admin_credit("player-1", bvr_coins="12.5")
        assert entry.currency == "BVR"
        assert entry.bvr_amount == Decimal("12.5")
        assert (await funded.get_balance("player-1")).bvr_coins == Decimal("62.5")

    @pytest.mark.asyncio
    async def test_mixed_credit(self, funded):
        """Test crediting several currencies at once"""
        entry = await funded.admin_credit("player-1", flowers=100, tickets=5, bvr_coins=1)
        assert entry.currency == "MIXED"
        assert entry.amount == Decimal("106")

        balance = await funded.get_balance("player-1")
        assert balance.snapshot() == {
            "flowers": Decimal("1100"), "tickets": Decimal("25"), "bvr_coins": Decimal("51"),
        }

    @pytest.mark.asyncio
    async def test_credit_shows_in_history(self, funded):
        """Test administrative credits appear in history"""
        entry = await funded.admin_credit("player-1", tickets=3)
        assert entry.id in [e.id for e in await funded.list_history()]
        events = await funded.audit_trail.get_events_by_type(AuditEventType.ADMIN_CREDIT)
        assert events[0].metadata["deltas"] == {"tickets": "3"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amounts", [{}, {"flowers": 0}, {"flowers": -5}, {"tickets": 5, "bvr_coins": -1}])
    async def test_rejects_empty_or_negative(self, funded, amounts):
        """Test empty and negative credits"""
        with pytest.raises(ValidationError):
            await funded.admin_credit("player-1", **amounts)
        assert (await funded.get_balance("player-1")).flowers == Decimal("1000")

    @pytest.mark.asyncio
    async def test_unknown_account(self, service):
        """Test crediting an unknown account"""
        with pytest.raises(AccountNotFoundError):
            await service.admin_credit("nobody", flowers=1)
