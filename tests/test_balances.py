"""
Tests for the account balance store
"""

import pytest
import pytest_asyncio
import asyncio
from decimal import Decimal

from garden_ledger.async_storage import AsyncInMemoryStorage
from garden_ledger.balances import (
    AccountBalance, BalanceStore, InFlightOperation,
    balance_field_for_currency, operation_key, to_decimal,
)
from garden_ledger.errors import (
    AccountNotFoundError, InsufficientFundsError, PersistenceFailure, ValidationError,
)


class TestCurrencyMapping:

    @pytest.mark.parametrize("currency,field", [
        ("BVR", "bvr_coins"),
        ("bvr", "flowers"),
        ("Bvr", "flowers"),
        ("USD", "flowers"),
        ("FLOWERS", "flowers"),
        ("USDT", "flowers"),
    ])
    def test_balance_field_for_currency(self, currency, field):
        """Test currency to balance field mapping"""
        assert balance_field_for_currency(currency) == field

    def test_to_decimal(self):
        """Test decimal conversion of request values"""
        assert to_decimal(None) == Decimal("0")
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("300") == Decimal("300")
        assert to_decimal(47) == Decimal("47")


class TestAccountBalance:

    @pytest_asyncio.fixture
    async def balance(self):
        store = BalanceStore(AsyncInMemoryStorage())
        return await store.create("a1", flowers=100, tickets=5, bvr_coins=10)

    @pytest.mark.asyncio
    async def test_apply_deltas(self, balance):
        """Test applying signed deltas"""
        before = balance.last_updated
        balance.apply_deltas({"flowers": Decimal("-40"), "tickets": Decimal("3")})
        assert balance.flowers == Decimal("60")
        assert balance.tickets == Decimal("8")
        assert balance.last_updated >= before

    @pytest.mark.asyncio
    async def test_apply_deltas_is_all_or_nothing(self, balance):
        """Test a failing delta leaves every field unchanged"""
        with pytest.raises(InsufficientFundsError) as exc_info:
            balance.apply_deltas({"flowers": Decimal("-10"), "bvr_coins": Decimal("-11")})
        assert exc_info.value.field == "bvr_coins"
        assert balance.flowers == Decimal("100")
        assert balance.bvr_coins == Decimal("10")

    @pytest.mark.asyncio
    async def test_unknown_field(self, balance):
        """Test deltas on an unknown balance field"""
        with pytest.raises(ValidationError):
            balance.get("diamonds")

    @pytest.mark.asyncio
    async def test_in_flight_journal_roundtrip(self, balance):
        """Test journal records survive serialization"""
        balance.record_in_flight("e1", "debit", {"flowers": Decimal("-5")})
        balance.record_in_flight("e1", "credit", {"flowers": Decimal("5")})
        assert set(balance.in_flight) == {operation_key("debit", "e1"), operation_key("credit", "e1")}

        restored = AccountBalance.from_dict(balance.to_dict())
        assert restored.has_in_flight("e1", "debit")
        operation = restored.clear_in_flight("e1", "debit")
        assert isinstance(operation, InFlightOperation)
        assert operation.deltas == {"flowers": Decimal("-5")}
        assert not restored.has_in_flight("e1", "debit")
        assert restored.has_in_flight("e1", "credit")


class TestBalanceStore:

    @pytest_asyncio.fixture
    async def store(self):
        return BalanceStore(AsyncInMemoryStorage(), max_retries=3)

    @pytest.mark.asyncio
    async def test_create_and_require(self, store):
        """Test balance creation and lookup"""
        created = await store.create("a1", flowers=1000)
        loaded = await store.require("a1")
        assert loaded.flowers == Decimal("1000")
        assert loaded.version == created.version == 1

    @pytest.mark.asyncio
    async def test_create_twice_rejected(self, store):
        """Test duplicate balance creation"""
        await store.create("a1")
        with pytest.raises(ValidationError):
            await store.create("a1")

    @pytest.mark.asyncio
    async def test_negative_start_rejected(self, store):
        """Test negative starting balances"""
        with pytest.raises(ValidationError):
            await store.create("a1", flowers=-1)

    @pytest.mark.asyncio
    async def test_require_missing(self, store):
        """Test lookup of a missing balance"""
        with pytest.raises(AccountNotFoundError):
            await store.require("nobody")

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, store):
        """Test version increment on update"""
        await store.create("a1", flowers=10)
        updated = await store.update("a1", lambda b: b.apply_deltas({"flowers": Decimal("5")}))
        assert updated.flowers == Decimal("15")
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_skipped_when_mutation_returns_false(self, store):
        """Test no write when the mutation declines"""
        await store.create("a1", flowers=10)
        result = await store.update("a1", lambda b: False)
        assert result.version == 1

    @pytest.mark.asyncio
    async def test_update_error_writes_nothing(self, store):
        """Test mutation errors abort the write"""
        await store.create("a1", flowers=10)
        with pytest.raises(InsufficientFundsError):
            await store.update("a1", lambda b: b.apply_deltas({"flowers": Decimal("-11")}))
        balance = await store.require("a1")
        assert balance.flowers == Decimal("10")
        assert balance.version == 1

    @pytest.mark.asyncio
    async def test_update_retries_lost_race(self, store):
        """Test retry after a lost version race"""
        await store.create("a1", flowers=10)
        calls = []

        async def mutate(balance):
            calls.append(balance.version)
            if len(calls) == 1:
                # Another writer lands between our read and our write
                await store.update("a1", lambda b: b.apply_deltas({"flowers": Decimal("1")}))
            balance.apply_deltas({"flowers": Decimal("100")})

        result = await store.update("a1", mutate)
        assert calls == [1, 2]
        assert result.flowers == Decimal("111")

    @pytest.mark.asyncio
    async def test_update_gives_up(self, store):
        """Test bounded retries on a balance that keeps changing"""
        await store.create("a1", flowers=10)

        async def always_conflict(balance):
            await store.update("a1", lambda b: b.apply_deltas({"tickets": Decimal("1")}))

        with pytest.raises(PersistenceFailure):
            await store.update("a1", always_conflict)

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_not_lost(self, store):
        """Test concurrent updates all land"""
        await store.create("a1", flowers=0)
        store.max_retries = 50

        await asyncio.gather(*[
            store.update("a1", lambda b: b.apply_deltas({"flowers": Decimal("1")}))
            for _ in range(10)
        ])

        assert (await store.require("a1")).flowers == Decimal("10")

    @pytest.mark.asyncio
    async def test_list_with_in_flight(self, store):
        """Test listing balances with unconfirmed operations"""
        await store.create("a1")
        await store.create("a2")
        await store.update("a2", lambda b: b.record_in_flight("e1", "debit", {"flowers": Decimal("-1")}))

        pending = await store.list_with_in_flight()
        assert [b.account_id for b in pending] == ["a2"]
