"""Shared data models for the settlement core.

All Pydantic models used across services for type safety and validation.
Amounts are integer satoshis throughout.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class IntentKind(str, Enum):
    """What a payment intent is for."""

    TIP = "tip"
    UNLOCK = "unlock"
    SUBSCRIPTION = "subscription"
    DONATION = "donation"


class IntentStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    FULFILLED = "fulfilled"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEvent(str, Enum):
    """Event names surfaced to webhook subscribers."""

    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_CONFIRMED = "payment.confirmed"
    WITHDRAWAL_COMPLETED = "withdrawal.completed"
    WITHDRAWAL_FAILED = "withdrawal.failed"


DEFAULT_WEBHOOK_EVENTS = [
    WebhookEvent.PAYMENT_RECEIVED.value,
    WebhookEvent.PAYMENT_CONFIRMED.value,
    WebhookEvent.WITHDRAWAL_COMPLETED.value,
]


class Creator(BaseModel):
    """Creator account data the settlement core reads (owned elsewhere)."""

    creator_id: str = Field(description="Unique creator identifier")
    display_name: Optional[str] = Field(default=None)
    subscription_tier: SubscriptionTier = Field(default=SubscriptionTier.FREE)
    fee_opt_in: bool = Field(default=True, description="Whether the creator pays the service fee")
    fee_basis_points: Optional[int] = Field(
        default=None, ge=0, le=10_000, description="Creator-specific fee; None uses the default"
    )
    created_at: datetime = Field(default_factory=utcnow)


class PaymentIntent(BaseModel):
    """A creator's declared expectation of a future payment."""

    intent_id: str = Field(description="Public intent identifier")
    creator_id: str = Field(description="Owning creator")
    kind: IntentKind = Field(default=IntentKind.TIP)
    amount_sats: Optional[int] = Field(default=None, ge=0, description="None for open-amount tips")
    amount_usd: Optional[float] = Field(default=None)
    title: Optional[str] = None
    description: Optional[str] = None
    content_url: Optional[str] = None
    content_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_recurring: bool = Field(default=False)
    recurrence_interval: Optional[str] = Field(default=None, description="e.g. 'monthly'")
    expires_at: Optional[datetime] = None
    status: IntentStatus = Field(default=IntentStatus.ACTIVE)
    created_at: datetime = Field(default_factory=utcnow)

    def current_status(self, now: Optional[datetime] = None) -> IntentStatus:
        """Status as seen at read time; expiry is passive, never swept."""
        if self.status == IntentStatus.ACTIVE and self.expires_at is not None:
            if (now or utcnow()) >= self.expires_at:
                return IntentStatus.EXPIRED
        return self.status


class CreatedIntent(PaymentIntent):
    """A freshly created intent plus its shareable links."""

    payment_url: str
    qr_code_url: str


class Transaction(BaseModel):
    """An observed, verified movement of funds."""

    txid: str = Field(description="Chain-native transaction id (globally unique)")
    creator_id: str
    intent_id: Optional[str] = None
    amount_sats: int = Field(ge=0)
    fee_sats: int = Field(default=0, ge=0)
    sender_address: Optional[str] = None
    receiver_address: Optional[str] = None
    confirmations: int = Field(default=0, ge=0)
    is_confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    block_height: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict, description="Decoded payload + caller data")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Why/how it was recorded")
    indexed_at: datetime = Field(default_factory=utcnow)


class Withdrawal(BaseModel):
    """A creator-initiated payout request."""

    withdrawal_id: str
    creator_id: str
    amount_sats: int = Field(ge=0, description="Payout amount")
    fee_sats: int = Field(default=0, ge=0, description="Service fee amount")
    network_fee_sats: int = Field(default=0, ge=0)
    to_address: str
    status: WithdrawalStatus = Field(default=WithdrawalStatus.PENDING)
    txid: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Webhook(BaseModel):
    """A subscriber endpoint for a creator's events."""

    webhook_id: str
    creator_id: str
    url: str
    events: List[str] = Field(default_factory=lambda: list(DEFAULT_WEBHOOK_EVENTS))
    secret: str = Field(description="Per-webhook HMAC signing secret")
    is_active: bool = True
    failure_count: int = Field(default=0, ge=0)
    last_triggered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def subscribes_to(self, event: str) -> bool:
        return event in self.events


class Balance(BaseModel):
    """Creator balance snapshot as computed by the ledger."""

    total_balance: int = 0
    unconfirmed_balance: int = 0


# Gateway shapes


class TxOutput(BaseModel):
    """One transaction output as reported by the gateway."""

    value_sats: int = 0
    addresses: List[str] = Field(default_factory=list)
    script_hex: Optional[str] = None

    @property
    def is_op_return(self) -> bool:
        return bool(self.script_hex) and self.script_hex.startswith("6a")


class TxInput(BaseModel):
    addresses: List[str] = Field(default_factory=list)
    value_sats: int = 0


class GatewayTransaction(BaseModel):
    """Ground-truth view of a transaction from the blockchain gateway."""

    txid: str
    vin: List[TxInput] = Field(default_factory=list)
    vout: List[TxOutput] = Field(default_factory=list)
    confirmations: int = 0
    block_height: Optional[int] = None


# Derived results


class VerificationResult(BaseModel):
    """Outcome of checking a claimed payment against the gateway."""

    valid: bool
    txid: str
    error: Optional[str] = None
    sender_address: Optional[str] = None
    receiver_address: Optional[str] = None
    amount: int = 0
    block_height: Optional[int] = None
    confirmations: int = 0
    is_confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None


class AmountValidation(BaseModel):
    valid: bool
    error: Optional[str] = None
    min_amount: Optional[int] = None


class FeeEstimate(BaseModel):
    """Linear byte-size fee estimate."""

    sats: int
    size: int = Field(description="Estimated transaction size in bytes")
    fee_per_byte: float
    priority: Literal["fast", "normal", "low"] = "normal"
    usd: Optional[float] = Field(default=None, description="Only set when a price feed is available")


class EfficiencyReport(BaseModel):
    amount_sats: int
    fee_sats: int
    fee_ratio: float = Field(description="Fee as a percentage of the amount")
    is_micropayment: bool
    should_batch: bool
    efficiency: Literal["excellent", "good", "fair", "poor"]
    recommendation: str


class BatchSummary(BaseModel):
    payment_count: int
    total_amount: int
    individual_fees: int
    estimated_batch_fee: int
    estimated_savings: int
    savings_percentage: float
    recommended: bool


class BatchPlan(BaseModel):
    batch_id: str
    creator_id: str
    txids: List[str]
    summary: BatchSummary


class PaymentStatus(BaseModel):
    txid: str
    status: Literal["pending", "confirmed", "failed"]
    confirmations: int = 0
    is_confirmed: bool = False
    amount_sats: Optional[int] = None
    created_at: Optional[datetime] = None
    error: Optional[str] = None


class MicropaymentStats(BaseModel):
    """Aggregates over a creator's confirmed micropayments."""

    micropayment_count: int = 0
    micropayment_total: int = 0
    micropayment_avg: float = 0.0
    micropayment_fees: int = 0
    micropayment_senders: int = 0
    avg_fee_ratio: float = Field(default=0.0, description="Average fee as a percentage of amount")
    batching_recommended: bool = False


class FeeQuote(BaseModel):
    """Fee estimate with optional micropayment efficiency analysis."""

    estimate: FeeEstimate
    efficiency: Optional[EfficiencyReport] = None
    should_batch: Optional[bool] = None


class WithdrawalBreakdown(BaseModel):
    """Payout/fee split for a withdrawal request."""

    total_sats: int
    service_sats: int
    payout_sats: int
    network_fee_sats: int
    fee_basis_points: int
    fee_type: Literal["voluntary", "mandatory"]
    tier: SubscriptionTier
    fee_opt_in: bool

    @property
    def breakdown(self) -> Dict[str, int]:
        return {
            "total": self.total_sats,
            "service_fee": self.service_sats,
            "network_fee": self.network_fee_sats,
            "payout": self.payout_sats,
        }


class WithdrawalPreview(BaseModel):
    total_sats: int
    breakdown: Dict[str, int]
    fee_type: Literal["voluntary", "mandatory"]
    fee_basis_points: int
    fee_opt_in: bool
    tier: SubscriptionTier
    message: str


class WebhookDeliveryResult(BaseModel):
    """Result of one webhook delivery attempt."""

    webhook_id: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class PendingPayment(BaseModel):
    """Tracker entry for a transaction awaiting confirmations."""

    txid: str
    creator_id: str
    indexed_at: datetime = Field(default_factory=utcnow)
    check_count: int = 0
