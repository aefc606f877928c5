"""Payment intents, ingestion and verification.

Ingestion order is fixed: ledger write, then cache invalidation, then
notification. Only the ledger write can fail a payment report; everything
after it is best-effort.
"""

import uuid
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import quote

from src.config import config
from src.database import Ledger
from src.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from src.logging_utils import CorrelationIdContext, get_correlation_id, get_logger
from src.models import (
    BatchPlan,
    CreatedIntent,
    FeeQuote,
    IntentKind,
    IntentStatus,
    MicropaymentStats,
    PaymentIntent,
    PaymentStatus,
    Transaction,
    VerificationResult,
    utcnow,
)

from .balance_cache import BalanceCache
from .gateway import BlockchainGateway, decode_op_return, with_retry
from .micropayments import MicropaymentPolicy, Priority
from .notifications import AuditLog, NotificationFanout, PriceFeed
from .tracking import ConfirmationTracker
from .webhooks import WebhookDispatcher

logger = get_logger(__name__)

QR_CODE_ENDPOINT = "https://api.qrserver.com/v1/create-qr-code/?size=200x200&data="
BATCH_WINDOW = timedelta(hours=1)


class PaymentService:
    """Orchestrates intent creation, payment verification and ingestion."""

    def __init__(
        self,
        ledger: Ledger,
        gateway: BlockchainGateway,
        balance_cache: BalanceCache,
        policy: MicropaymentPolicy,
        tracker: ConfirmationTracker,
        webhooks: WebhookDispatcher,
        notifier: NotificationFanout,
        audit: AuditLog,
        price_feed: Optional[PriceFeed] = None,
        frontend_url: Optional[str] = None,
        min_confirmations: Optional[int] = None,
        gateway_retries: Optional[int] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.balance_cache = balance_cache
        self.policy = policy
        self.tracker = tracker
        self.webhooks = webhooks
        self.notifier = notifier
        self.audit = audit
        self.price_feed = price_feed
        self.frontend_url = (frontend_url or config.frontend_url).rstrip("/")
        self.min_confirmations = config.min_confirmations if min_confirmations is None else min_confirmations
        self.gateway_retries = config.gateway_max_retries if gateway_retries is None else gateway_retries

    # Intents

    async def create_intent(
        self,
        creator_id: str,
        kind: IntentKind = IntentKind.TIP,
        amount_sats: Optional[int] = None,
        amount_usd: Optional[float] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        content_url: Optional[str] = None,
        content_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_recurring: bool = False,
        recurrence_interval: Optional[str] = None,
        expires_in_hours: Optional[float] = None,
    ) -> CreatedIntent:
        """Create a payment intent and its shareable links.

        Args:
            creator_id: Owning creator.
            kind: What the payment is for.
            amount_sats: Expected amount; None for open-amount tips.
            expires_in_hours: Relative expiry; must be positive when given.

        Raises:
            ValidationError: Amount negative or below the dust floor, or a non-positive expiry.
        """
        metadata = dict(metadata or {})

        if amount_sats is not None:
            self.policy.require_valid_amount(amount_sats)
            if self.policy.is_micropayment(amount_sats):
                fee = self.policy.calculate_optimized_fee()
                metadata["is_micropayment"] = True
                metadata["should_batch"] = self.policy.should_batch(amount_sats)
                metadata["fee_efficiency"] = self.policy.analyze_payment_efficiency(
                    amount_sats, fee.sats
                ).model_dump()

        expires_at = None
        if expires_in_hours is not None:
            if expires_in_hours <= 0:
                raise ValidationError("expires_in_hours must be positive", field="expires_in_hours")
            expires_at = utcnow() + timedelta(hours=expires_in_hours)

        intent = PaymentIntent(
            intent_id=str(uuid.uuid4()),
            creator_id=creator_id,
            kind=kind,
            amount_sats=amount_sats,
            amount_usd=amount_usd,
            title=title,
            description=description,
            content_url=content_url,
            content_id=content_id,
            metadata=metadata,
            is_recurring=is_recurring,
            recurrence_interval=recurrence_interval,
            expires_at=expires_at,
        )
        await self.ledger.create_payment_intent(intent)

        payment_url = f"{self.frontend_url}/pay/{creator_id}/{intent.intent_id}"
        return CreatedIntent(
            **intent.model_dump(),
            payment_url=payment_url,
            qr_code_url=QR_CODE_ENDPOINT + quote(payment_url, safe=""),
        )

    async def get_intent(self, intent_id: str) -> PaymentIntent:
        """Public read of an intent with expiry applied at read time.

        Raises:
            NotFoundError: If the intent does not exist.
        """
        intent = await self.ledger.get_payment_intent(intent_id)
        if intent is None:
            raise NotFoundError("Payment intent", intent_id)
        return intent.model_copy(update={"status": intent.current_status()})

    # Ingestion

    async def process_payment(
        self,
        txid: str,
        creator_id: str,
        amount_sats: int,
        sender_address: Optional[str],
        receiver_address: str,
        intent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Verify and record a reported payment exactly once.

        Raises:
            ConflictError: If the txid is already recorded.
            NotFoundError: If ``intent_id`` is unknown.
            AuthorizationError: If the intent belongs to another creator.
            ValidationError: Below the dust floor, or the gateway does not confirm the funds.
        """
        metadata = dict(metadata or {})

        with CorrelationIdContext(get_correlation_id(), prefix="pay"):
            if await self.ledger.get_transaction(txid) is not None:
                raise ConflictError("Transaction already recorded", details={"txid": txid})

            intent = None
            if intent_id is not None:
                intent = await self.ledger.get_payment_intent(intent_id)
                if intent is None:
                    raise NotFoundError("Payment intent", intent_id)
                if intent.creator_id != creator_id:
                    raise AuthorizationError("Payment intent does not belong to creator")

            self.policy.require_valid_amount(amount_sats)

            verification = await self.verify_transaction(
                txid,
                expected_amount=amount_sats,
                expected_receiver=receiver_address,
                expected_sender=sender_address,
            )
            if not verification.valid:
                raise ValidationError(
                    f"Transaction verification failed: {verification.error}",
                    details={"txid": txid},
                )

            fee = self.policy.calculate_optimized_fee()
            efficiency = (
                self.policy.analyze_payment_efficiency(amount_sats, fee.sats).model_dump()
                if amount_sats > 0
                else None
            )
            transaction = Transaction(
                txid=txid,
                creator_id=creator_id,
                intent_id=intent.intent_id if intent else None,
                amount_sats=amount_sats,
                fee_sats=fee.sats,
                sender_address=verification.sender_address or sender_address,
                receiver_address=verification.receiver_address or receiver_address,
                confirmations=verification.confirmations,
                is_confirmed=verification.is_confirmed,
                confirmed_at=verification.confirmed_at,
                block_height=verification.block_height,
                payload={**(verification.payload or {}), **metadata},
                metadata={
                    "recorded_via": "payment_service",
                    "is_micropayment": self.policy.is_micropayment(amount_sats),
                    "fee_efficiency": efficiency,
                    "verification": verification.model_dump(
                        include={"amount", "confirmations", "block_height", "is_confirmed"}
                    ),
                    **metadata,
                },
            )
            await self.ledger.create_transaction(transaction)
            self.audit.payment_recorded(creator_id, txid, amount_sats, intent_id=transaction.intent_id)

            if intent is not None and not intent.is_recurring:
                await self._fulfill_intent(intent.intent_id)

            await self.balance_cache.invalidate_balance(creator_id)

            if transaction.is_confirmed:
                await self._notify(self.notifier.notify_payment_confirmed, creator_id, transaction)
                await self._fire_payment_webhooks(creator_id, transaction)
            else:
                await self._notify(self.notifier.notify_payment_received, creator_id, transaction)
                await self._fire_payment_webhooks(creator_id, transaction)
                self.tracker.register(txid, creator_id)

            logger.info(f"Payment processed: {txid} for creator {creator_id}")
            return transaction

    async def _fulfill_intent(self, intent_id: str) -> None:
        try:
            await self.ledger.update_payment_intent(intent_id, status=IntentStatus.FULFILLED)
        except Exception as e:
            logger.error(f"Failed to mark intent {intent_id} fulfilled: {e}", exc_info=True)

    async def _notify(self, notify, creator_id: str, transaction: Transaction) -> None:
        try:
            await notify(creator_id, transaction)
        except Exception as e:
            logger.error(f"Notification failed for {transaction.txid}: {e}", exc_info=True)

    async def _fire_payment_webhooks(self, creator_id: str, transaction: Transaction) -> None:
        results = await self.webhooks.trigger_payment_webhooks(creator_id, transaction)
        if results:
            delivered = sum(1 for r in results if r.success)
            event = "payment.confirmed" if transaction.is_confirmed else "payment.received"
            self.audit.webhook_triggered(creator_id, event, delivered, len(results) - delivered)

    # Verification

    async def verify_transaction(
        self,
        txid: str,
        expected_amount: Optional[int] = None,
        expected_receiver: Optional[str] = None,
        expected_sender: Optional[str] = None,
        min_confirmations: Optional[int] = None,
    ) -> VerificationResult:
        """Check a claimed payment against the gateway.

        Never raises for gateway trouble: not-found, short amounts and gateway
        errors all come back as ``valid=False`` with an error message. Outputs
        are summed for ``expected_receiver``, or across all non-data outputs
        when no receiver is given.
        """
        required = self.min_confirmations if min_confirmations is None else min_confirmations

        try:
            tx = await with_retry(
                lambda: self.gateway.get_transaction(txid), max_retries=self.gateway_retries
            )
        except Exception as e:
            logger.error(f"Error verifying transaction {txid}: {e}")
            return VerificationResult(
                valid=False, txid=txid, error=str(e) or "Transaction verification failed"
            )

        if tx is None:
            return VerificationResult(valid=False, txid=txid, error="Transaction not found on blockchain")

        if expected_receiver is not None:
            receiver_outputs = [o for o in tx.vout if expected_receiver in o.addresses]
        else:
            receiver_outputs = [o for o in tx.vout if not o.is_op_return]
        total_received = sum(o.value_sats for o in receiver_outputs)

        if expected_amount and total_received < expected_amount:
            return VerificationResult(
                valid=False,
                txid=txid,
                error=f"Insufficient amount: received {total_received}, expected {expected_amount}",
            )

        sender = expected_sender
        if tx.vin and tx.vin[0].addresses:
            sender = tx.vin[0].addresses[0]

        payload = None
        op_returns = [o for o in tx.vout if o.is_op_return]
        if op_returns:
            payload = decode_op_return(op_returns[0].script_hex)

        is_confirmed = tx.confirmations >= required
        return VerificationResult(
            valid=True,
            txid=txid,
            sender_address=sender,
            receiver_address=expected_receiver,
            amount=total_received,
            block_height=tx.block_height,
            confirmations=tx.confirmations,
            is_confirmed=is_confirmed,
            confirmed_at=utcnow() if is_confirmed else None,
            payload=payload,
        )

    # Queries and fee tools

    async def get_payment_status(self, txid: str) -> PaymentStatus:
        """Ledger first, then the gateway."""
        transaction = await self.ledger.get_transaction(txid)
        if transaction is not None:
            return PaymentStatus(
                txid=txid,
                status="confirmed" if transaction.is_confirmed else "pending",
                confirmations=transaction.confirmations,
                is_confirmed=transaction.is_confirmed,
                amount_sats=transaction.amount_sats,
                created_at=transaction.indexed_at,
            )

        verification = await self.verify_transaction(txid)
        if verification.valid:
            return PaymentStatus(
                txid=txid,
                status="confirmed" if verification.is_confirmed else "pending",
                confirmations=verification.confirmations,
                is_confirmed=verification.is_confirmed,
                amount_sats=verification.amount,
            )
        return PaymentStatus(txid=txid, status="failed", error=verification.error)

    async def estimate_fee(
        self,
        num_inputs: int = 1,
        num_outputs: int = 2,
        priority: Priority = "normal",
        amount_sats: Optional[int] = None,
    ) -> FeeQuote:
        """Fee estimate, plus efficiency analysis when ``amount_sats`` is a micropayment."""
        usd_price = await self._usd_price()
        estimate = self.policy.calculate_optimized_fee(num_inputs, num_outputs, priority, usd_price=usd_price)

        if amount_sats and self.policy.is_micropayment(amount_sats):
            return FeeQuote(
                estimate=estimate,
                efficiency=self.policy.analyze_payment_efficiency(amount_sats, estimate.sats),
                should_batch=self.policy.should_batch(amount_sats),
            )
        return FeeQuote(estimate=estimate)

    async def _usd_price(self) -> Optional[float]:
        if self.price_feed is None:
            return None
        try:
            return await self.price_feed.get_usd_price()
        except Exception as e:
            logger.warning(f"Price feed unavailable, omitting USD estimate: {e}")
            return None

    async def batch_payments(self, creator_id: str) -> BatchPlan:
        """Plan a batch over the creator's recent small unconfirmed payments.

        Raises:
            NotFoundError: No batchable payments.
            ValidationError: Batching would not save fees.
        """
        payments = await self.ledger.list_batchable_transactions(
            creator_id,
            below_sats=self.policy.batch_threshold_sats,
            since=utcnow() - BATCH_WINDOW,
            limit=self.policy.batch_size,
        )
        if not payments:
            raise NotFoundError("Batchable payments", creator_id)

        summary = self.policy.calculate_batch_summary(payments)
        if not summary.recommended:
            raise ValidationError(
                "Batching not recommended for these payments",
                details={"estimated_savings": summary.estimated_savings},
            )

        return BatchPlan(
            batch_id=f"batch_{uuid.uuid4().hex[:16]}",
            creator_id=creator_id,
            txids=[p.txid for p in payments],
            summary=summary,
        )

    async def get_micropayment_stats(self, creator_id: str) -> MicropaymentStats:
        return await self.ledger.micropayment_stats(creator_id, self.policy.micropayment_max_sats)

    async def get_micropayment_recommendations(self, creator_id: str) -> Dict[str, Any]:
        stats = await self.get_micropayment_stats(creator_id)
        payments = await self.ledger.list_batchable_transactions(
            creator_id,
            below_sats=self.policy.batch_threshold_sats,
            since=utcnow() - BATCH_WINDOW,
            limit=self.policy.batch_size,
        )
        summary = self.policy.calculate_batch_summary(payments) if payments else None
        return {
            "stats": stats,
            "batch_summary": summary,
            "recommendations": self.policy.recommendations(stats, summary),
        }
