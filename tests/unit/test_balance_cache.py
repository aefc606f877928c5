"""Unit tests for cache-aside balance reads."""

import pytest

from src.models import Balance, Transaction
from src.satsflow.balance_cache import BalanceCache, balance_key


@pytest.fixture
def balance_cache(ledger, fake_cache):
    return BalanceCache(ledger, fake_cache, ttl_seconds=300)


@pytest.mark.unit
class TestBalanceCache:
    @pytest.mark.asyncio
    async def test_miss_populates_cache(self, ledger, fake_cache, balance_cache):
        await ledger.create_transaction(Transaction(txid="t1", creator_id="C1", amount_sats=1_000, is_confirmed=True))
        await ledger.create_transaction(Transaction(txid="t2", creator_id="C1", amount_sats=700))

        balance = await balance_cache.get_balance("C1")

        assert balance == Balance(total_balance=1_000, unconfirmed_balance=700)
        assert fake_cache.store[balance_key("C1")] == {"total_balance": 1_000, "unconfirmed_balance": 700}
        assert fake_cache.ttls[balance_key("C1")] == 300

    @pytest.mark.asyncio
    async def test_hit_skips_ledger(self, fake_cache, balance_cache):
        fake_cache.store["creator:C1:balance"] = {"total_balance": 42, "unconfirmed_balance": 0}
        balance = await balance_cache.get_balance("C1")
        assert balance.total_balance == 42

    @pytest.mark.asyncio
    async def test_invalidate_then_read_reflects_ledger(self, ledger, balance_cache):
        await ledger.create_transaction(Transaction(txid="t1", creator_id="C1", amount_sats=1_000, is_confirmed=True))
        assert (await balance_cache.get_balance("C1")).total_balance == 1_000

        await ledger.create_transaction(Transaction(txid="t2", creator_id="C1", amount_sats=500, is_confirmed=True))
        # Stale until invalidated
        assert (await balance_cache.get_balance("C1")).total_balance == 1_000

        await balance_cache.invalidate_balance("C1")
        assert (await balance_cache.get_balance("C1")).total_balance == 1_500

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_ledger(self, ledger, fake_cache, balance_cache):
        await ledger.create_transaction(Transaction(txid="t1", creator_id="C1", amount_sats=900, is_confirmed=True))
        fake_cache.fail = True

        balance = await balance_cache.get_balance("C1")
        assert balance.total_balance == 900

        # Invalidation failures are swallowed too
        await balance_cache.invalidate_balance("C1")

    @pytest.mark.asyncio
    async def test_refresh_overwrites_snapshot(self, ledger, fake_cache, balance_cache):
        fake_cache.store["creator:C1:balance"] = {"total_balance": 1, "unconfirmed_balance": 1}
        await ledger.create_transaction(Transaction(txid="t1", creator_id="C1", amount_sats=800))

        balance = await balance_cache.refresh_balance("C1")

        assert balance.unconfirmed_balance == 800
        assert fake_cache.store["creator:C1:balance"]["unconfirmed_balance"] == 800

    @pytest.mark.asyncio
    async def test_creators_are_isolated(self, ledger, balance_cache):
        await ledger.create_transaction(Transaction(txid="a", creator_id="C1", amount_sats=600, is_confirmed=True))
        await ledger.create_transaction(Transaction(txid="b", creator_id="C2", amount_sats=900, is_confirmed=True))

        assert (await balance_cache.get_balance("C1")).total_balance == 600
        assert (await balance_cache.get_balance("C2")).total_balance == 900
