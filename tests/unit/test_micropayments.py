"""Unit tests for micropayment classification and fee policy."""

import math

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from src.errors import ValidationError
from src.models import MicropaymentStats, Transaction
from src.satsflow.micropayments import MicropaymentPolicy, estimate_tx_size


@pytest.fixture
def policy():
    return MicropaymentPolicy(
        dust_limit_sats=546,
        micropayment_max_sats=100_000,
        batch_threshold_sats=10_000,
        batch_size=10,
        min_fee_per_byte=1.0,
        recommended_fee_per_byte=1.0,
        fast_fee_per_byte=1.5,
    )


@pytest.mark.unit
class TestClassification:
    def test_micropayment_ceiling_is_inclusive(self, policy):
        assert policy.is_micropayment(100_000) is True
        assert policy.is_micropayment(100_001) is False

    def test_batch_threshold_is_exclusive(self, policy):
        assert policy.should_batch(9_999) is True
        assert policy.should_batch(10_000) is False

    def test_dust_floor(self, policy):
        below = policy.validate_amount(545)
        assert below.valid is False
        assert below.min_amount == 546
        assert "546" in below.error
        assert policy.validate_amount(546).valid is True

    def test_require_valid_amount_raises(self, policy):
        with pytest.raises(ValidationError) as exc_info:
            policy.require_valid_amount(10)
        assert exc_info.value.details["min_amount"] == 546

        with pytest.raises(ValidationError):
            policy.require_valid_amount(-1)

    def test_thresholds_default_to_config(self):
        default_policy = MicropaymentPolicy()
        assert default_policy.dust_limit_sats == 546
        assert default_policy.batch_size == 10


@pytest.mark.unit
class TestFeeEstimation:
    def test_default_one_in_two_out(self, policy):
        estimate = policy.calculate_optimized_fee()
        assert estimate.size == 148 + 68 + 10
        assert estimate.sats == 226
        assert estimate.priority == "normal"
        assert estimate.usd is None

    def test_fast_priority_rounds_up(self, policy):
        estimate = policy.calculate_optimized_fee(1, 1, "fast")
        assert estimate.size == 192
        assert estimate.sats == 288
        assert estimate.fee_per_byte == 1.5

        odd = policy.calculate_optimized_fee(1, 2, "fast")
        assert odd.sats == math.ceil(226 * 1.5)

    def test_usd_only_with_price(self, policy):
        estimate = policy.calculate_optimized_fee(usd_price=400.0)
        assert estimate.usd == pytest.approx(226 / 100_000_000 * 400.0)

    def test_unknown_priority_falls_back_to_normal(self, policy):
        estimate = policy.calculate_optimized_fee(1, 2, "urgent")
        assert estimate.priority == "normal"
        assert estimate.sats == 226

    @given(inputs=st.integers(0, 500), outputs=st.integers(0, 500), priority=st.sampled_from(["low", "normal", "fast"]))
    @settings(max_examples=200, deadline=None)
    def test_fee_is_ceiling_of_linear_size(self, inputs, outputs, priority):
        policy = MicropaymentPolicy(min_fee_per_byte=1.0, recommended_fee_per_byte=1.0, fast_fee_per_byte=1.5)
        estimate = policy.calculate_optimized_fee(inputs, outputs, priority)

        assert estimate.size == estimate_tx_size(inputs, outputs)
        assert estimate.sats == math.ceil(estimate.size * estimate.fee_per_byte)
        assert estimate.sats >= estimate.size


@pytest.mark.unit
class TestEfficiency:
    @pytest.mark.parametrize(
        "amount,fee,bucket",
        [
            (100_000, 226, "excellent"),
            (10_000, 226, "good"),
            (3_000, 226, "fair"),
            (1_000, 226, "poor"),
        ],
    )
    def test_buckets(self, policy, amount, fee, bucket):
        assert policy.analyze_payment_efficiency(amount, fee).efficiency == bucket

    def test_recommendations(self, policy):
        small = policy.analyze_payment_efficiency(1_000, 226)
        assert small.should_batch is True
        assert small.recommendation == "Batch with other small payments to reduce fees"

        large_but_costly = policy.analyze_payment_efficiency(20_000, 2_500)
        assert large_but_costly.should_batch is False
        assert large_but_costly.recommendation == "Consider increasing payment amount or using batching"

        fine = policy.analyze_payment_efficiency(100_000, 226)
        assert fine.recommendation == "Payment efficiency is acceptable"

    def test_zero_amount_rejected(self, policy):
        with pytest.raises(ValidationError):
            policy.analyze_payment_efficiency(0, 226)

    @given(amount=st.integers(1, 10**9), fee=st.integers(0, 10**6))
    @settings(max_examples=200, deadline=None)
    def test_bucket_matches_ratio(self, amount, fee):
        report = MicropaymentPolicy().analyze_payment_efficiency(amount, fee)
        ratio = fee / amount * 100
        expected = "excellent" if ratio < 1 else "good" if ratio < 5 else "fair" if ratio < 10 else "poor"
        assert report.efficiency == expected
        assert report.fee_ratio == pytest.approx(ratio)


@pytest.mark.unit
class TestBatchSummary:
    def test_savings_against_combined_fee(self, policy):
        payments = [Transaction(txid=f"t{i}", creator_id="C1", amount_sats=1_000, fee_sats=226) for i in range(5)]
        summary = policy.calculate_batch_summary(payments)

        # one input, six outputs
        assert summary.estimated_batch_fee == 148 + 6 * 34 + 10
        assert summary.individual_fees == 5 * 226
        assert summary.estimated_savings == 1130 - 362
        assert summary.total_amount == 5_000
        assert summary.recommended is True

    def test_single_payment_not_recommended(self, policy):
        summary = policy.calculate_batch_summary([{"amount_sats": 1_000, "fee_sats": 226}])
        assert summary.estimated_batch_fee == 226
        assert summary.estimated_savings == 0
        assert summary.recommended is False

    def test_no_fees_means_zero_percentage(self, policy):
        summary = policy.calculate_batch_summary([{"amount_sats": 700}])
        assert summary.savings_percentage == 0.0
        assert summary.recommended is False

    @given(fees=st.lists(st.integers(0, 5_000), max_size=30))
    @settings(max_examples=100, deadline=None)
    def test_recommended_iff_savings_positive(self, fees):
        summary = MicropaymentPolicy().calculate_batch_summary(
            [{"amount_sats": 600, "fee_sats": fee} for fee in fees]
        )
        assert summary.recommended == (summary.estimated_savings > 0)
        assert summary.estimated_savings == sum(fees) - summary.estimated_batch_fee


@pytest.mark.unit
class TestRecommendations:
    def test_high_fee_ratio_recommends_batching(self, policy):
        stats = MicropaymentStats(micropayment_count=3, micropayment_avg=800.0, avg_fee_ratio=28.0, batching_recommended=True)
        items = policy.recommendations(stats)
        assert [item["type"] for item in items] == ["batching"]

    def test_below_dust_average_flagged(self):
        policy = MicropaymentPolicy(dust_limit_sats=546)
        stats = MicropaymentStats(micropayment_count=2, micropayment_avg=300.0)
        assert [item["type"] for item in policy.recommendations(stats)] == ["minimum_amount"]
