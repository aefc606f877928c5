"""Outbound webhook delivery.

Signs event payloads with each webhook's secret, posts them with a bounded
timeout, and trips a permanent circuit breaker after consecutive failures.
"""

import asyncio
import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional

import httpx

from src.config import config
from src.database import Ledger
from src.logging_utils import get_correlation_id, get_logger
from src.models import (
    Transaction,
    WebhookDeliveryResult,
    WebhookEvent,
    Withdrawal,
    WithdrawalStatus,
    utcnow,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
CORRELATION_HEADER = "X-Correlation-Id"


def create_signature(secret: str, payload: bytes) -> str:
    """Hex-encoded HMAC-SHA256 of ``payload`` under ``secret``."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify HMAC-SHA256 signature for webhook authenticity.

    Args:
        payload: Raw request body bytes as received.
        signature: Hex-encoded HMAC signature from the header.
        secret: The webhook's signing secret.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected_signature = create_signature(secret, payload)

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(expected_signature, signature)


def encode_body(event: str, data: Dict[str, Any]) -> bytes:
    body = {"event": event, "data": data, "timestamp": utcnow().isoformat()}
    return json.dumps(body, default=str, separators=(",", ":")).encode()


def payment_event_data(creator_id: str, transaction: Transaction) -> Dict[str, Any]:
    return {
        "transaction": {
            "txid": transaction.txid,
            "amount_sats": transaction.amount_sats,
            "sender_address": transaction.sender_address,
            "receiver_address": transaction.receiver_address,
            "confirmations": transaction.confirmations,
            "is_confirmed": transaction.is_confirmed,
        },
        "creator_id": creator_id,
    }


def withdrawal_event_data(creator_id: str, withdrawal: Withdrawal) -> Dict[str, Any]:
    return {
        "withdrawal": {
            "id": withdrawal.withdrawal_id,
            "txid": withdrawal.txid,
            "amount_sats": withdrawal.amount_sats,
            "fee_sats": withdrawal.fee_sats,
            "to_address": withdrawal.to_address,
            "status": withdrawal.status.value,
        },
        "creator_id": creator_id,
    }


class WebhookDispatcher:
    """Delivers signed events to a creator's registered endpoints."""

    def __init__(
        self,
        ledger: Ledger,
        timeout: Optional[float] = None,
        failure_threshold: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the dispatcher.

        Args:
            ledger: Ledger holding webhook rows and failure counters.
            timeout: Per-delivery timeout in seconds.
            failure_threshold: Consecutive failures that deactivate a webhook.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.ledger = ledger
        self.timeout = config.webhook_timeout_seconds if timeout is None else timeout
        self.failure_threshold = (
            config.webhook_failure_threshold if failure_threshold is None else failure_threshold
        )
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def trigger_webhook(self, webhook_id: str, event: str, data: Dict[str, Any]) -> WebhookDeliveryResult:
        """Deliver one event to one webhook.

        Inactive or unsubscribed webhooks are skipped without a request. Any
        delivery failure increments the failure counter; reaching the
        threshold deactivates the webhook for good.
        """
        webhook = await self.ledger.get_webhook(webhook_id)
        if not webhook or not webhook.is_active:
            return WebhookDeliveryResult(
                webhook_id=webhook_id, success=False, error="Webhook not found or inactive"
            )
        if not webhook.subscribes_to(event):
            return WebhookDeliveryResult(webhook_id=webhook_id, success=False, error="Event not subscribed")

        body = encode_body(event, data)
        headers = {
            SIGNATURE_HEADER: create_signature(webhook.secret, body),
            EVENT_HEADER: event,
            "Content-Type": "application/json",
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[CORRELATION_HEADER] = correlation_id

        try:
            response = await self._client.post(webhook.url, content=body, headers=headers)
            response.raise_for_status()
        except Exception as e:
            logger.error(f"Webhook delivery failed for {webhook_id} ({event}): {e!r}")
            await self._record_failure(webhook_id)
            status_code = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
            return WebhookDeliveryResult(
                webhook_id=webhook_id, success=False, status_code=status_code, error=str(e) or repr(e)
            )

        await self.ledger.record_webhook_success(webhook_id)
        logger.info(f"Delivered {event} to webhook {webhook_id}: {response.status_code}")
        return WebhookDeliveryResult(webhook_id=webhook_id, success=True, status_code=response.status_code)

    async def _record_failure(self, webhook_id: str) -> None:
        failure_count = await self.ledger.record_webhook_failure(webhook_id)
        if failure_count >= self.failure_threshold:
            await self.ledger.deactivate_webhook(webhook_id)
            logger.warning(f"Webhook {webhook_id} deactivated after {failure_count} failures")

    async def _fan_out(self, creator_id: str, event: str, data: Dict[str, Any]) -> List[WebhookDeliveryResult]:
        webhooks = await self.ledger.list_webhooks(creator_id, active_only=True)
        targets = [wh for wh in webhooks if wh.subscribes_to(event)]
        if not targets:
            return []

        outcomes = await asyncio.gather(
            *(self.trigger_webhook(wh.webhook_id, event, data) for wh in targets),
            return_exceptions=True,
        )

        results = []
        for webhook, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Webhook task for {webhook.webhook_id} raised: {outcome!r}")
                results.append(
                    WebhookDeliveryResult(webhook_id=webhook.webhook_id, success=False, error=str(outcome))
                )
            else:
                results.append(outcome)
        return results

    async def trigger_payment_webhooks(
        self, creator_id: str, transaction: Transaction
    ) -> List[WebhookDeliveryResult]:
        """Fan out ``payment.confirmed`` or ``payment.received`` to subscribers."""
        event = (
            WebhookEvent.PAYMENT_CONFIRMED.value
            if transaction.is_confirmed
            else WebhookEvent.PAYMENT_RECEIVED.value
        )
        try:
            return await self._fan_out(creator_id, event, payment_event_data(creator_id, transaction))
        except Exception as e:
            logger.error(f"Error triggering payment webhooks for creator {creator_id}: {e}", exc_info=True)
            return []

    async def trigger_withdrawal_webhooks(
        self, creator_id: str, withdrawal: Withdrawal
    ) -> List[WebhookDeliveryResult]:
        """Fan out ``withdrawal.completed`` or ``withdrawal.failed``; other statuses are silent."""
        if withdrawal.status == WithdrawalStatus.COMPLETED:
            event = WebhookEvent.WITHDRAWAL_COMPLETED.value
        elif withdrawal.status == WithdrawalStatus.FAILED:
            event = WebhookEvent.WITHDRAWAL_FAILED.value
        else:
            return []

        try:
            return await self._fan_out(creator_id, event, withdrawal_event_data(creator_id, withdrawal))
        except Exception as e:
            logger.error(f"Error triggering withdrawal webhooks for creator {creator_id}: {e}", exc_info=True)
            return []
