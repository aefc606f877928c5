"""Micropayment classification and fee-efficiency policy.

Pure functions over integer satoshi amounts: no I/O, deterministic given the
thresholds the policy was built with.
"""

import math
from typing import Any, Dict, Iterable, List, Literal, Optional

from src.config import config
from src.errors import ValidationError
from src.models import AmountValidation, BatchSummary, EfficiencyReport, FeeEstimate, MicropaymentStats

Priority = Literal["fast", "normal", "low"]

# Linear transaction size model (bytes)
INPUT_SIZE_BYTES = 148
OUTPUT_SIZE_BYTES = 34
TX_OVERHEAD_BYTES = 10

SATS_PER_COIN = 100_000_000


def estimate_tx_size(num_inputs: int, num_outputs: int) -> int:
    return num_inputs * INPUT_SIZE_BYTES + num_outputs * OUTPUT_SIZE_BYTES + TX_OVERHEAD_BYTES


class MicropaymentPolicy:
    """Thresholds and fee table for classifying payments."""

    def __init__(
        self,
        dust_limit_sats: Optional[int] = None,
        micropayment_max_sats: Optional[int] = None,
        batch_threshold_sats: Optional[int] = None,
        batch_size: Optional[int] = None,
        min_fee_per_byte: Optional[float] = None,
        recommended_fee_per_byte: Optional[float] = None,
        fast_fee_per_byte: Optional[float] = None,
    ):
        """Initialize the policy. Every threshold defaults to its config value."""
        self.dust_limit_sats = config.dust_limit_sats if dust_limit_sats is None else dust_limit_sats
        self.micropayment_max_sats = (
            config.micropayment_max_sats if micropayment_max_sats is None else micropayment_max_sats
        )
        self.batch_threshold_sats = (
            config.batch_threshold_sats if batch_threshold_sats is None else batch_threshold_sats
        )
        self.batch_size = config.batch_size if batch_size is None else batch_size
        self.fee_per_byte: Dict[str, float] = {
            "low": config.min_fee_per_byte if min_fee_per_byte is None else min_fee_per_byte,
            "normal": (
                config.recommended_fee_per_byte
                if recommended_fee_per_byte is None
                else recommended_fee_per_byte
            ),
            "fast": config.fast_fee_per_byte if fast_fee_per_byte is None else fast_fee_per_byte,
        }

    def is_micropayment(self, amount_sats: int) -> bool:
        return amount_sats <= self.micropayment_max_sats

    def should_batch(self, amount_sats: int) -> bool:
        return amount_sats < self.batch_threshold_sats

    def validate_amount(self, amount_sats: int) -> AmountValidation:
        """Check an amount against the dust floor."""
        if amount_sats < self.dust_limit_sats:
            return AmountValidation(
                valid=False,
                error=f"Amount below dust limit of {self.dust_limit_sats} satoshis",
                min_amount=self.dust_limit_sats,
            )
        return AmountValidation(valid=True)

    def require_valid_amount(self, amount_sats: int, field: str = "amount_sats") -> None:
        """Raise ValidationError when ``amount_sats`` is negative or below the dust floor."""
        if amount_sats < 0:
            raise ValidationError("Amount must be a non-negative integer", field=field)
        result = self.validate_amount(amount_sats)
        if not result.valid:
            raise ValidationError(
                result.error or "Invalid amount",
                field=field,
                details={"min_amount": result.min_amount},
            )

    def calculate_optimized_fee(
        self,
        num_inputs: int = 1,
        num_outputs: int = 2,
        priority: Priority = "normal",
        usd_price: Optional[float] = None,
    ) -> FeeEstimate:
        """Estimate a fee from the linear size model and the priority's fee-per-byte.

        Args:
            num_inputs: Number of transaction inputs.
            num_outputs: Number of transaction outputs.
            priority: ``fast``, ``normal`` or ``low``. Unknown values fall back to normal.
            usd_price: Price of one coin in USD; omitted from the estimate when None.
        """
        if num_inputs < 0 or num_outputs < 0:
            raise ValidationError("Input and output counts must be non-negative")

        fee_per_byte = self.fee_per_byte.get(priority, self.fee_per_byte["normal"])
        size = estimate_tx_size(num_inputs, num_outputs)
        sats = math.ceil(size * fee_per_byte)
        usd = sats / SATS_PER_COIN * usd_price if usd_price is not None else None
        return FeeEstimate(
            sats=sats,
            size=size,
            fee_per_byte=fee_per_byte,
            priority=priority if priority in self.fee_per_byte else "normal",
            usd=usd,
        )

    def analyze_payment_efficiency(self, amount_sats: int, fee_sats: int) -> EfficiencyReport:
        """Bucket the fee-to-amount ratio and recommend an action."""
        if amount_sats <= 0:
            raise ValidationError("Amount must be positive to analyze efficiency", field="amount_sats")

        fee_ratio = (fee_sats / amount_sats) * 100
        should_batch = self.should_batch(amount_sats)

        if fee_ratio < 1:
            efficiency = "excellent"
        elif fee_ratio < 5:
            efficiency = "good"
        elif fee_ratio < 10:
            efficiency = "fair"
        else:
            efficiency = "poor"

        if should_batch and fee_ratio > 5:
            recommendation = "Batch with other small payments to reduce fees"
        elif fee_ratio > 10:
            recommendation = "Consider increasing payment amount or using batching"
        else:
            recommendation = "Payment efficiency is acceptable"

        return EfficiencyReport(
            amount_sats=amount_sats,
            fee_sats=fee_sats,
            fee_ratio=fee_ratio,
            is_micropayment=self.is_micropayment(amount_sats),
            should_batch=should_batch,
            efficiency=efficiency,
            recommendation=recommendation,
        )

    def calculate_batch_summary(self, payments: Iterable[Any]) -> BatchSummary:
        """Compare individual fees against one combined transaction.

        Args:
            payments: Objects with ``amount_sats`` and ``fee_sats`` (transactions or dicts).
        """
        payments = list(payments)
        total_amount = sum(_field(p, "amount_sats") for p in payments)
        individual_fees = sum(_field(p, "fee_sats") for p in payments)
        batch_fee = self.calculate_optimized_fee(1, len(payments) + 1).sats

        savings = individual_fees - batch_fee
        return BatchSummary(
            payment_count=len(payments),
            total_amount=total_amount,
            individual_fees=individual_fees,
            estimated_batch_fee=batch_fee,
            estimated_savings=savings,
            savings_percentage=(savings / individual_fees) * 100 if individual_fees > 0 else 0.0,
            recommended=savings > 0,
        )

    def recommendations(
        self,
        stats: MicropaymentStats,
        batch_summary: Optional[BatchSummary] = None,
    ) -> List[Dict[str, Any]]:
        """Human-facing recommendations derived from stats and a pending batch."""
        items: List[Dict[str, Any]] = []

        if stats.batching_recommended:
            items.append(
                {
                    "type": "batching",
                    "priority": "high",
                    "message": "Your micro-payments have high fee ratios. Consider batching payments.",
                    "savings": batch_summary.estimated_savings if batch_summary else 0,
                }
            )

        if batch_summary and batch_summary.recommended:
            items.append(
                {
                    "type": "batch_now",
                    "priority": "medium",
                    "message": (
                        f"You have {batch_summary.payment_count} payments that could be batched, "
                        f"saving ~{batch_summary.estimated_savings} sats."
                    ),
                }
            )

        if stats.micropayment_count and stats.micropayment_avg < self.dust_limit_sats:
            items.append(
                {
                    "type": "minimum_amount",
                    "priority": "low",
                    "message": "Some payments are below the dust limit. Consider setting a minimum payment amount.",
                }
            )

        return items


def _field(payment: Any, name: str) -> int:
    if isinstance(payment, dict):
        return int(payment.get(name) or 0)
    return int(getattr(payment, name, 0) or 0)
