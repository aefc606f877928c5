"""Unit tests for the confirmation tracker."""

import asyncio

import pytest

from src.errors import ExternalServiceError
from src.models import Transaction


async def record_pending(core, txid, creator_id="C1", amount=5_000):
    tx = Transaction(txid=txid, creator_id=creator_id, amount_sats=amount)
    await core.ledger.create_transaction(tx)
    core.tracker.register(txid, creator_id)
    return tx


@pytest.mark.unit
class TestConfirmationTracker:
    @pytest.mark.asyncio
    async def test_confirms_and_stops_tracking(self, core, gateway, make_tx, notifier, webhook_requests):
        await core.ledger.create_webhook("C1", "https://hooks.test/conf", events=["payment.confirmed"])
        await record_pending(core, "tx-a")

        gateway.add(make_tx("tx-a", confirmations=1))
        await core.tracker.run_once()
        stored = await core.ledger.get_transaction("tx-a")
        assert stored.confirmations == 1
        assert stored.is_confirmed is False
        assert "tx-a" in core.tracker
        assert notifier.events == []

        gateway.add(make_tx("tx-a", confirmations=3, block_height=900_001))
        await core.tracker.run_once()
        stored = await core.ledger.get_transaction("tx-a")
        assert stored.is_confirmed is True
        assert stored.confirmed_at is not None
        assert stored.block_height == 900_001
        assert "tx-a" not in core.tracker
        assert notifier.events == [("confirmed", "C1", "tx-a")]
        assert [r.headers["X-Webhook-Event"] for r in webhook_requests] == ["payment.confirmed"]

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, core, gateway, make_tx, fake_cache):
        await record_pending(core, "tx-b")
        assert (await core.balance_cache.get_balance("C1")).unconfirmed_balance == 5_000

        gateway.add(make_tx("tx-b", confirmations=3))
        await core.tracker.run_once()

        balance = await core.balance_cache.get_balance("C1")
        assert balance.total_balance == 5_000
        assert balance.unconfirmed_balance == 0

    @pytest.mark.asyncio
    async def test_confirmed_flag_is_sticky(self, core, gateway, make_tx):
        await record_pending(core, "tx-c")
        gateway.add(make_tx("tx-c", confirmations=3))
        await core.tracker.run_once()
        first_confirmed_at = (await core.ledger.get_transaction("tx-c")).confirmed_at

        # Reorg: the gateway now reports fewer confirmations
        core.tracker.register("tx-c", "C1")
        gateway.add(make_tx("tx-c", confirmations=1))
        await core.tracker.run_once()

        stored = await core.ledger.get_transaction("tx-c")
        assert stored.is_confirmed is True
        assert stored.confirmed_at == first_confirmed_at

        await core.ledger.update_transaction("tx-c", is_confirmed=False, confirmed_at=None)
        assert (await core.ledger.get_transaction("tx-c")).is_confirmed is True

    @pytest.mark.asyncio
    async def test_gives_up_after_cap(self, core, gateway, make_tx):
        core.tracker.max_checks = 2
        await record_pending(core, "tx-d")
        gateway.add(make_tx("tx-d", confirmations=0))

        for _ in range(2):
            await core.tracker.run_once()
            assert "tx-d" in core.tracker

        await core.tracker.run_once()
        assert "tx-d" not in core.tracker
        stored = await core.ledger.get_transaction("tx-d")
        assert stored.is_confirmed is False

    @pytest.mark.asyncio
    async def test_not_found_counts_toward_cap(self, core):
        core.tracker.max_checks = 1
        await record_pending(core, "tx-gone")

        await core.tracker.run_once()
        await core.tracker.run_once()

        assert "tx-gone" not in core.tracker

    @pytest.mark.asyncio
    async def test_error_drops_only_that_entry(self, core, gateway, make_tx):
        await record_pending(core, "tx-err")
        await record_pending(core, "tx-ok")
        gateway.errors["tx-err"] = ExternalServiceError("Blockchain gateway", "boom")
        gateway.add(make_tx("tx-ok", confirmations=5))

        await core.tracker.run_once()

        assert "tx-err" not in core.tracker
        assert (await core.ledger.get_transaction("tx-ok")).is_confirmed is True

    @pytest.mark.asyncio
    async def test_register_is_bounded(self, core):
        core.tracker.max_pending = 2
        assert core.tracker.register("t1", "C1") is True
        assert core.tracker.register("t2", "C1") is True
        assert core.tracker.register("t3", "C1") is False
        assert core.tracker.register("t1", "C1") is True
        assert len(core.tracker) == 2

    @pytest.mark.asyncio
    async def test_rehydrate_from_ledger(self, core):
        await core.ledger.create_transaction(Transaction(txid="u1", creator_id="C1", amount_sats=700))
        await core.ledger.create_transaction(Transaction(txid="u2", creator_id="C2", amount_sats=800))
        await core.ledger.create_transaction(
            Transaction(txid="done", creator_id="C1", amount_sats=900, is_confirmed=True)
        )

        added = await core.tracker.rehydrate()

        assert added == 2
        assert {p.txid for p in core.tracker.pending()} == {"u1", "u2"}
        assert await core.tracker.rehydrate() == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, core, gateway, make_tx):
        core.tracker.interval_seconds = 0.01
        await record_pending(core, "tx-loop")
        gateway.add(make_tx("tx-loop", confirmations=3))

        core.tracker.start()
        assert core.tracker.running
        for _ in range(100):
            if "tx-loop" not in core.tracker:
                break
            await asyncio.sleep(0.01)
        await core.tracker.stop()

        assert not core.tracker.running
        assert (await core.ledger.get_transaction("tx-loop")).is_confirmed is True
