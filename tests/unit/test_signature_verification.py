"""Unit tests for webhook signature creation and verification."""

import hashlib
import hmac
import json

import httpx
import pytest

from src.satsflow.webhooks import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    WebhookDispatcher,
    create_signature,
    verify_webhook_signature,
)


@pytest.mark.unit
class TestSignatureVerification:
    """Test HMAC-SHA256 signature verification."""

    def test_valid_signature(self):
        """Test that valid signatures pass verification."""
        payload = b'{"event":"payment.received","data":{"txid":"abc"}}'
        secret = "my_secret_key"

        # Generate signature (simulating the dispatcher)
        expected_sig = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(payload, expected_sig, secret) is True

    def test_create_signature_matches_hmac_sha256(self):
        payload = b'{"a":1}'
        assert create_signature("s3cret", payload) == hmac.new(b"s3cret", payload, hashlib.sha256).hexdigest()

    def test_invalid_signature(self):
        """Test that invalid signatures fail verification."""
        payload = b'{"event":"payment.received"}'
        wrong_signature = "0" * 64

        assert verify_webhook_signature(payload, wrong_signature, "my_secret_key") is False

    def test_wrong_secret(self):
        """Test that signatures with wrong secret fail."""
        payload = b'{"event":"payment.received"}'
        wrong_sig = create_signature("wrong_secret", payload)

        assert verify_webhook_signature(payload, wrong_sig, "my_secret_key") is False

    def test_modified_payload(self):
        """Test that modified payloads fail verification."""
        original_payload = b'{"amount_sats":1000}'
        modified_payload = b'{"amount_sats":9000}'
        secret = "my_secret_key"

        signature = create_signature(secret, original_payload)

        assert verify_webhook_signature(modified_payload, signature, secret) is False

    def test_empty_signature(self):
        """Test that empty signatures fail verification."""
        assert verify_webhook_signature(b"{}", "", "my_secret_key") is False

    @pytest.mark.asyncio
    async def test_delivered_body_verifies_with_webhook_secret(self, ledger):
        """Subscribers can verify the exact bytes they receive."""
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        webhook = await ledger.create_webhook("C1", "https://hooks.test/a")
        dispatcher = WebhookDispatcher(ledger, transport=httpx.MockTransport(handler))
        try:
            result = await dispatcher.trigger_webhook(
                webhook.webhook_id, "payment.received", {"txid": "abc"}
            )
        finally:
            await dispatcher.close()

        assert result.success is True
        request = received[0]
        body = request.content
        assert verify_webhook_signature(body, request.headers[SIGNATURE_HEADER], webhook.secret)
        assert request.headers[EVENT_HEADER] == "payment.received"

        document = json.loads(body)
        assert document["event"] == "payment.received"
        assert document["data"] == {"txid": "abc"}
        assert "timestamp" in document
