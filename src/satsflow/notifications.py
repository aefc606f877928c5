"""Collaborator contracts fed by the settlement core.

Notification fan-out, the audit stream, business metrics and the fiat price
feed all receive already-computed data. The default implementations log or
write to the ledger; deployments swap in real transports.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from src.database import Ledger
from src.logging_utils import AUDIT_LOGGER_NAME, get_correlation_id, get_logger
from src.models import Transaction, Withdrawal, utcnow

logger = get_logger(__name__)

# Audit event names
PAYMENT_RECORDED = "payment.recorded"
WITHDRAWAL_CREATED = "withdrawal.created"
WITHDRAWAL_COMPLETED = "withdrawal.completed"
WEBHOOK_TRIGGERED = "webhook.triggered"
SETTINGS_CHANGED = "settings.changed"

WITHDRAWAL_FEE_REVENUE = "withdrawal_fee_revenue"


class NotificationFanout(Protocol):
    """Pushes events to connected creator clients."""

    async def notify_payment_received(self, creator_id: str, transaction: Transaction) -> None:
        ...

    async def notify_payment_confirmed(self, creator_id: str, transaction: Transaction) -> None:
        ...

    async def notify_withdrawal_status(self, creator_id: str, withdrawal: Withdrawal) -> None:
        ...


class LoggingNotificationFanout:
    """Fan-out that only records what would have been pushed."""

    async def notify_payment_received(self, creator_id: str, transaction: Transaction) -> None:
        logger.info(
            f"Notify {creator_id}: payment received {transaction.txid} ({transaction.amount_sats} sats)"
        )

    async def notify_payment_confirmed(self, creator_id: str, transaction: Transaction) -> None:
        logger.info(
            f"Notify {creator_id}: payment confirmed {transaction.txid} "
            f"({transaction.confirmations} confirmations)"
        )

    async def notify_withdrawal_status(self, creator_id: str, withdrawal: Withdrawal) -> None:
        logger.info(f"Notify {creator_id}: withdrawal {withdrawal.withdrawal_id} is {withdrawal.status.value}")


def _mask_address(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    return f"{address[:8]}...{address[-6:]}"


class AuditLog:
    """Structured audit entries on the dedicated audit logger.

    Entries carry no secrets; destination addresses are masked.
    """

    def __init__(self, audit_logger: Optional[logging.Logger] = None):
        self.logger = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def record(self, event: str, **fields: Any) -> Dict[str, Any]:
        entry = {
            "event": event,
            "at": utcnow().isoformat(),
            "correlation_id": get_correlation_id(),
            **fields,
        }
        self.logger.info(f"AUDIT {event}", extra={"audit": entry})
        return entry

    def payment_recorded(
        self,
        creator_id: str,
        txid: str,
        amount_sats: int,
        intent_id: Optional[str] = None,
        source: str = "api",
    ) -> Dict[str, Any]:
        return self.record(
            PAYMENT_RECORDED,
            creator_id=creator_id,
            txid=txid,
            amount_sats=int(amount_sats),
            intent_id=intent_id,
            source=source,
        )

    def withdrawal_created(
        self, creator_id: str, withdrawal_id: str, amount_sats: int, to_address: str
    ) -> Dict[str, Any]:
        return self.record(
            WITHDRAWAL_CREATED,
            creator_id=creator_id,
            withdrawal_id=withdrawal_id,
            amount_sats=int(amount_sats),
            to_address=_mask_address(to_address),
        )

    def withdrawal_completed(
        self, creator_id: str, withdrawal_id: str, txid: Optional[str], amount_sats: int
    ) -> Dict[str, Any]:
        return self.record(
            WITHDRAWAL_COMPLETED,
            creator_id=creator_id,
            withdrawal_id=withdrawal_id,
            txid=txid,
            amount_sats=int(amount_sats),
        )

    def webhook_triggered(self, creator_id: str, event: str, delivered: int, failed: int) -> Dict[str, Any]:
        return self.record(
            WEBHOOK_TRIGGERED,
            creator_id=creator_id,
            webhook_event=event,
            delivered=delivered,
            failed=failed,
        )

    def settings_changed(self, creator_id: str, setting: str, value: Any) -> Dict[str, Any]:
        return self.record(SETTINGS_CHANGED, creator_id=creator_id, setting=setting, value=value)


class BusinessMetrics:
    """Ledger-backed business metric recorder."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    async def track_withdrawal_fee_revenue(self, creator_id: str, fee_sats: int) -> None:
        await self.ledger.record_business_metric(WITHDRAWAL_FEE_REVENUE, fee_sats, creator_id=creator_id)

    async def total_fee_revenue(self, creator_id: Optional[str] = None) -> int:
        return await self.ledger.sum_business_metric(WITHDRAWAL_FEE_REVENUE, creator_id=creator_id)


class PriceFeed(Protocol):
    """Fiat price source for fee estimates."""

    async def get_usd_price(self) -> Optional[float]:
        ...


class StaticPriceFeed:
    """Fixed configured price; None means no fiat estimates."""

    def __init__(self, usd_price: Optional[float]):
        self.usd_price = usd_price

    async def get_usd_price(self) -> Optional[float]:
        return self.usd_price
