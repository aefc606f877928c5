"""Withdrawal payout and service-fee computation.

The fee applies when the caller says so explicitly, otherwise when the
creator has opted in. Tier only changes how the fee is labelled.
"""

import uuid
from typing import Any, Dict, Optional

from src.config import config
from src.database import Ledger
from src.errors import NotFoundError, ValidationError
from src.logging_utils import get_logger
from src.models import (
    SubscriptionTier,
    Withdrawal,
    WithdrawalBreakdown,
    WithdrawalPreview,
    WithdrawalStatus,
)

from .balance_cache import BalanceCache
from .notifications import AuditLog, BusinessMetrics, NotificationFanout
from .webhooks import WebhookDispatcher

logger = get_logger(__name__)

BASIS_POINTS_DIVISOR = 10_000

FEE_MESSAGES = {
    (True, True): "1% voluntary tip supports ongoing hosting, indexers, and audits. You can opt out.",
    (True, False): "Add a 1% tip to support ongoing development (optional)",
    (False, True): "1% service fee funds infrastructure and development",
    (False, False): "Service fee waived",
}


def split_withdrawal(total_sats: int, fee_basis_points: int, network_fee_sats: int) -> Dict[str, int]:
    """Split ``total_sats`` into service fee, network fee and payout.

    Raises:
        ValidationError: When the fees exceed the total.
    """
    service_sats = (total_sats * fee_basis_points) // BASIS_POINTS_DIVISOR if fee_basis_points > 0 else 0
    payout_sats = total_sats - service_sats - network_fee_sats
    if payout_sats < 0:
        raise ValidationError(
            "Withdrawal amount too small to cover fees",
            field="total_sats",
            details={"service_sats": service_sats, "network_fee_sats": network_fee_sats},
        )
    return {
        "total_sats": total_sats,
        "service_sats": service_sats,
        "payout_sats": payout_sats,
        "network_fee_sats": network_fee_sats,
    }


class WithdrawalService:
    """Computes payout splits and records withdrawal requests."""

    def __init__(
        self,
        ledger: Ledger,
        balance_cache: BalanceCache,
        metrics: BusinessMetrics,
        audit: AuditLog,
        notifier: NotificationFanout,
        webhooks: WebhookDispatcher,
        default_fee_basis_points: Optional[int] = None,
        network_fee_sats: Optional[int] = None,
    ):
        self.ledger = ledger
        self.balance_cache = balance_cache
        self.metrics = metrics
        self.audit = audit
        self.notifier = notifier
        self.webhooks = webhooks
        self.default_fee_basis_points = (
            config.default_fee_basis_points if default_fee_basis_points is None else default_fee_basis_points
        )
        self.network_fee_sats = config.network_fee_sats if network_fee_sats is None else network_fee_sats

    async def calculate_withdrawal(
        self,
        creator_id: str,
        total_sats: int,
        include_service_fee: Optional[bool] = None,
        network_fee_sats: Optional[int] = None,
    ) -> WithdrawalBreakdown:
        """Compute the payout/fee split for a withdrawal.

        Args:
            creator_id: Withdrawing creator.
            total_sats: Requested total, fees included.
            include_service_fee: Explicit override; None follows the creator's opt-in flag.
            network_fee_sats: Network fee estimate; defaults to the configured value.

        Raises:
            ValidationError: Non-positive total, negative network fee, or fees exceeding the total.
            NotFoundError: Unknown creator.
        """
        if not creator_id:
            raise ValidationError("Creator ID is required", field="creator_id")
        if total_sats is None or total_sats <= 0:
            raise ValidationError("Total amount must be greater than 0", field="total_sats")

        network_fee = self.network_fee_sats if network_fee_sats is None else network_fee_sats
        if network_fee < 0:
            raise ValidationError("Network fee must be non-negative", field="network_fee_sats")

        creator = await self.ledger.get_creator(creator_id)
        if creator is None:
            raise NotFoundError("Creator", creator_id)

        tier = creator.subscription_tier
        basis_points = (
            creator.fee_basis_points if creator.fee_basis_points is not None else self.default_fee_basis_points
        )
        apply_fee = creator.fee_opt_in if include_service_fee is None else include_service_fee
        effective_bp = basis_points if apply_fee else 0

        amounts = split_withdrawal(total_sats, effective_bp, network_fee)
        return WithdrawalBreakdown(
            **amounts,
            fee_basis_points=effective_bp,
            fee_type="voluntary" if tier == SubscriptionTier.FREE else "mandatory",
            tier=tier,
            fee_opt_in=creator.fee_opt_in,
        )

    async def create_withdrawal(
        self,
        creator_id: str,
        amount_sats: int,
        fee_sats: int,
        to_address: str,
        metadata: Optional[Dict[str, Any]] = None,
        network_fee_sats: int = 0,
    ) -> Withdrawal:
        """Persist a pending withdrawal; a positive fee is recorded as revenue."""
        if not to_address:
            raise ValidationError("Destination address is required", field="to_address")

        withdrawal = Withdrawal(
            withdrawal_id=str(uuid.uuid4()),
            creator_id=creator_id,
            amount_sats=amount_sats,
            fee_sats=fee_sats,
            network_fee_sats=network_fee_sats,
            to_address=to_address,
            metadata=metadata or {},
        )
        await self.ledger.create_withdrawal(withdrawal)
        self.audit.withdrawal_created(creator_id, withdrawal.withdrawal_id, amount_sats, to_address)

        if fee_sats > 0:
            try:
                await self.metrics.track_withdrawal_fee_revenue(creator_id, fee_sats)
            except Exception as e:
                logger.error(f"Failed to record fee revenue for {withdrawal.withdrawal_id}: {e}")

        logger.info(f"Withdrawal created: {creator_id} - {amount_sats} sats (fee: {fee_sats} sats)")
        return withdrawal

    async def request_withdrawal(
        self,
        creator_id: str,
        total_sats: int,
        to_address: str,
        include_service_fee: Optional[bool] = None,
    ) -> Withdrawal:
        """Calculate the split and record the withdrawal with its breakdown."""
        calculation = await self.calculate_withdrawal(creator_id, total_sats, include_service_fee)
        return await self.create_withdrawal(
            creator_id,
            amount_sats=calculation.payout_sats,
            fee_sats=calculation.service_sats,
            to_address=to_address,
            network_fee_sats=calculation.network_fee_sats,
            metadata={
                "calculation": calculation.model_dump(mode="json"),
                "breakdown": calculation.breakdown,
                "tier": calculation.tier.value,
                "fee_type": calculation.fee_type,
            },
        )

    async def get_withdrawal_preview(self, creator_id: str, total_sats: int) -> WithdrawalPreview:
        calculation = await self.calculate_withdrawal(creator_id, total_sats)
        return WithdrawalPreview(
            total_sats=calculation.total_sats,
            breakdown=calculation.breakdown,
            fee_type=calculation.fee_type,
            fee_basis_points=calculation.fee_basis_points,
            fee_opt_in=calculation.fee_opt_in,
            tier=calculation.tier,
            message=self.get_fee_message(calculation.tier, calculation.fee_opt_in),
        )

    @staticmethod
    def get_fee_message(tier: SubscriptionTier, fee_opt_in: bool) -> str:
        return FEE_MESSAGES[(SubscriptionTier(tier) == SubscriptionTier.FREE, bool(fee_opt_in))]

    async def update_fee_opt_in(self, creator_id: str, opt_in: bool) -> None:
        await self.ledger.set_creator_fee_opt_in(creator_id, opt_in)
        self.audit.settings_changed(creator_id, "fee_opt_in", opt_in)
        logger.info(f"Fee opt-in updated: {creator_id} -> {opt_in}")

    async def record_withdrawal_outcome(
        self,
        withdrawal_id: str,
        status: WithdrawalStatus,
        txid: Optional[str] = None,
    ) -> Withdrawal:
        """Apply a status reported by the broadcasting component.

        Completion invalidates the balance cache before anyone is notified.

        Raises:
            NotFoundError: Unknown withdrawal.
        """
        status = WithdrawalStatus(status)
        withdrawal = await self.ledger.update_withdrawal_status(withdrawal_id, status, txid=txid)
        creator_id = withdrawal.creator_id

        if status == WithdrawalStatus.COMPLETED:
            await self.balance_cache.invalidate_balance(creator_id)
            self.audit.withdrawal_completed(creator_id, withdrawal_id, withdrawal.txid, withdrawal.amount_sats)

        try:
            await self.notifier.notify_withdrawal_status(creator_id, withdrawal)
        except Exception as e:
            logger.error(f"Withdrawal notification failed for {withdrawal_id}: {e}")

        await self.webhooks.trigger_withdrawal_webhooks(creator_id, withdrawal)
        return withdrawal
