"""Unit tests for withdrawal fee computation and records."""

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from src.errors import NotFoundError, ValidationError
from src.models import Creator, SubscriptionTier, Transaction, WithdrawalStatus
from src.satsflow.withdrawals import WithdrawalService, split_withdrawal


@pytest.mark.unit
class TestCalculateWithdrawal:
    @pytest.mark.asyncio
    async def test_free_tier_opted_in(self, core, creator):
        """1% of 100k is 1000; payout after the 250-sat network fee is 98750."""
        result = await core.withdrawals.calculate_withdrawal("C1", 100_000)

        assert result.service_sats == 1_000
        assert result.payout_sats == 98_750
        assert result.network_fee_sats == 250
        assert result.fee_type == "voluntary"
        assert result.fee_basis_points == 100
        assert result.breakdown == {"total": 100_000, "service_fee": 1_000, "network_fee": 250, "payout": 98_750}

    @pytest.mark.asyncio
    async def test_paid_tier_is_labelled_mandatory(self, core):
        await core.ledger.upsert_creator(Creator(creator_id="P1", subscription_tier=SubscriptionTier.PRO))
        result = await core.withdrawals.calculate_withdrawal("P1", 50_000)

        assert result.fee_type == "mandatory"
        assert result.service_sats == 500

    @pytest.mark.asyncio
    async def test_opt_out_skips_fee_for_every_tier(self, core):
        await core.ledger.upsert_creator(
            Creator(creator_id="B1", subscription_tier=SubscriptionTier.BUSINESS, fee_opt_in=False)
        )
        result = await core.withdrawals.calculate_withdrawal("B1", 10_000)

        assert result.service_sats == 0
        assert result.fee_basis_points == 0
        assert result.payout_sats == 9_750

    @pytest.mark.asyncio
    async def test_explicit_override_wins(self, core, creator):
        without = await core.withdrawals.calculate_withdrawal("C1", 100_000, include_service_fee=False)
        assert without.service_sats == 0

        await core.withdrawals.update_fee_opt_in("C1", False)
        forced = await core.withdrawals.calculate_withdrawal("C1", 100_000, include_service_fee=True)
        assert forced.service_sats == 1_000
        assert forced.fee_opt_in is False

    @pytest.mark.asyncio
    async def test_custom_network_fee(self, core, creator):
        result = await core.withdrawals.calculate_withdrawal("C1", 10_000, network_fee_sats=0)
        assert result.payout_sats == 9_900

    @pytest.mark.asyncio
    async def test_non_positive_total_rejected(self, core, creator):
        with pytest.raises(ValidationError):
            await core.withdrawals.calculate_withdrawal("C1", 0)
        with pytest.raises(ValidationError):
            await core.withdrawals.calculate_withdrawal("C1", -5)

    @pytest.mark.asyncio
    async def test_unknown_creator(self, core):
        with pytest.raises(NotFoundError):
            await core.withdrawals.calculate_withdrawal("nobody", 10_000)

    @pytest.mark.asyncio
    async def test_too_small_to_cover_fees(self, core, creator):
        with pytest.raises(ValidationError, match="too small to cover fees"):
            await core.withdrawals.calculate_withdrawal("C1", 200)

    @pytest.mark.asyncio
    @given(total=st.integers(1, 10**12), bp=st.integers(0, 10_000), opt_in=st.booleans())
    @settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture], deadline=None)
    async def test_payout_never_exceeds_total(self, core, total, bp, opt_in):
        await core.ledger.upsert_creator(Creator(creator_id="prop", fee_basis_points=bp, fee_opt_in=opt_in))
        try:
            result = await core.withdrawals.calculate_withdrawal("prop", total)
        except ValidationError:
            return
        assert 0 <= result.payout_sats <= result.total_sats
        assert result.payout_sats + result.service_sats + result.network_fee_sats == total


@pytest.mark.unit
class TestSplitWithdrawal:
    @given(total=st.integers(1, 10**12), bp=st.integers(0, 10_000), network=st.integers(0, 10_000))
    @settings(max_examples=200, deadline=None)
    def test_fee_monotonicity(self, total, bp, network):
        try:
            amounts = split_withdrawal(total, bp, network)
        except ValidationError:
            assert total - (total * bp) // 10_000 - network < 0
            return
        assert amounts["payout_sats"] <= total
        assert amounts["service_sats"] == (total * bp) // 10_000

    def test_service_fee_floors(self):
        assert split_withdrawal(999, 100, 0)["service_sats"] == 9


@pytest.mark.unit
class TestWithdrawalRecords:
    @pytest.mark.asyncio
    async def test_request_withdrawal_persists_breakdown(self, core, creator):
        withdrawal = await core.withdrawals.request_withdrawal("C1", 100_000, "bitcoincash:qdest00000000000000")

        stored = await core.ledger.get_withdrawal(withdrawal.withdrawal_id)
        assert stored.status == WithdrawalStatus.PENDING
        assert stored.amount_sats == 98_750
        assert stored.fee_sats == 1_000
        assert stored.network_fee_sats == 250
        assert stored.metadata["breakdown"]["payout"] == 98_750
        assert stored.metadata["fee_type"] == "voluntary"
        assert await core.metrics.total_fee_revenue("C1") == 1_000

    @pytest.mark.asyncio
    async def test_zero_fee_records_no_revenue(self, core, creator):
        await core.withdrawals.create_withdrawal("C1", 5_000, 0, "bitcoincash:qdest")
        assert await core.metrics.total_fee_revenue("C1") == 0

    @pytest.mark.asyncio
    async def test_missing_destination_rejected(self, core, creator):
        with pytest.raises(ValidationError):
            await core.withdrawals.create_withdrawal("C1", 5_000, 0, "")

    @pytest.mark.asyncio
    async def test_completion_invalidates_balance_and_notifies(self, core, creator, fake_cache, notifier):
        await core.ledger.create_transaction(
            Transaction(txid="tx-funds", creator_id="C1", amount_sats=200_000, is_confirmed=True)
        )
        assert (await core.balance_cache.get_balance("C1")).total_balance == 200_000

        withdrawal = await core.withdrawals.request_withdrawal("C1", 100_000, "bitcoincash:qdest")
        completed = await core.withdrawals.record_withdrawal_outcome(
            withdrawal.withdrawal_id, WithdrawalStatus.COMPLETED, txid="a" * 64
        )

        assert completed.status == WithdrawalStatus.COMPLETED
        assert completed.txid == "a" * 64
        assert ("withdrawal", "C1", "completed") in notifier.events
        balance = await core.balance_cache.get_balance("C1")
        assert balance.total_balance == 100_000

    @pytest.mark.asyncio
    async def test_unknown_withdrawal_outcome(self, core):
        with pytest.raises(NotFoundError):
            await core.withdrawals.record_withdrawal_outcome("missing", WithdrawalStatus.FAILED)


@pytest.mark.unit
class TestFeeMessages:
    @pytest.mark.parametrize(
        "tier,opt_in,message",
        [
            (SubscriptionTier.FREE, True, "1% voluntary tip supports ongoing hosting, indexers, and audits. You can opt out."),
            (SubscriptionTier.FREE, False, "Add a 1% tip to support ongoing development (optional)"),
            (SubscriptionTier.PRO, True, "1% service fee funds infrastructure and development"),
            (SubscriptionTier.BUSINESS, False, "Service fee waived"),
        ],
    )
    def test_messages(self, tier, opt_in, message):
        assert WithdrawalService.get_fee_message(tier, opt_in) == message

    @pytest.mark.asyncio
    async def test_preview(self, core, creator):
        preview = await core.withdrawals.get_withdrawal_preview("C1", 100_000)
        assert preview.breakdown["payout"] == 98_750
        assert preview.fee_type == "voluntary"
        assert preview.message.startswith("1% voluntary tip")

    @pytest.mark.asyncio
    async def test_update_opt_in_unknown_creator(self, core):
        with pytest.raises(NotFoundError):
            await core.withdrawals.update_fee_opt_in("ghost", True)
