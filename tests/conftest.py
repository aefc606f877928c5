import os
from typing import Any, Dict, List, Optional

import httpx
import pytest

# Set test environment variables
# This must run before src.config is imported by any test
os.environ.setdefault("GATEWAY_URL", "https://gateway.test/api/v2")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("FRONTEND_URL", "https://pay.test")
os.environ.setdefault("LOG_FORMAT", "text")

from src.database import Ledger  # noqa: E402
from src.models import Creator, GatewayTransaction, SubscriptionTier, TxInput, TxOutput  # noqa: E402
from src.satsflow.micropayments import MicropaymentPolicy  # noqa: E402
from src.satsflow.runtime import build_core  # noqa: E402
from src.satsflow.webhooks import WebhookDispatcher  # noqa: E402

RECEIVER = "bitcoincash:qreceiver0000000000000000000000000000000"
SENDER = "bitcoincash:qsender00000000000000000000000000000000000"


class FakeCache:
    """In-memory Cache that records every operation."""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}
        self.ops: List[tuple] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("cache unavailable")

    async def get(self, key: str) -> Optional[Any]:
        self.ops.append(("get", key))
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self.ops.append(("set", key))
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl_seconds

    async def delete(self, key: str) -> None:
        self.ops.append(("delete", key))
        self._check()
        self.store.pop(key, None)


class FakeGateway:
    """Gateway serving canned transactions; records lookups."""

    def __init__(self):
        self.transactions: Dict[str, GatewayTransaction] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.broadcasts: List[str] = []

    def add(self, tx: GatewayTransaction) -> GatewayTransaction:
        self.transactions[tx.txid] = tx
        return tx

    async def get_transaction(self, txid: str) -> Optional[GatewayTransaction]:
        self.calls.append(txid)
        if txid in self.errors:
            raise self.errors[txid]
        return self.transactions.get(txid)

    async def broadcast_transaction(self, raw_hex: str) -> str:
        self.broadcasts.append(raw_hex)
        return "f" * 64


class RecordingNotifier:
    def __init__(self):
        self.events: List[tuple] = []

    async def notify_payment_received(self, creator_id, transaction):
        self.events.append(("received", creator_id, transaction.txid))

    async def notify_payment_confirmed(self, creator_id, transaction):
        self.events.append(("confirmed", creator_id, transaction.txid))

    async def notify_withdrawal_status(self, creator_id, withdrawal):
        self.events.append(("withdrawal", creator_id, withdrawal.status.value))


def make_gateway_tx(
    txid: str,
    amount_sats: int = 10_000,
    confirmations: int = 0,
    receiver: str = RECEIVER,
    sender: str = SENDER,
    op_return_hex: Optional[str] = None,
    block_height: Optional[int] = None,
) -> GatewayTransaction:
    vout = [TxOutput(value_sats=amount_sats, addresses=[receiver])]
    if op_return_hex:
        vout.append(TxOutput(value_sats=0, script_hex=op_return_hex))
    return GatewayTransaction(
        txid=txid,
        vin=[TxInput(addresses=[sender], value_sats=amount_sats + 500)],
        vout=vout,
        confirmations=confirmations,
        block_height=block_height,
    )


@pytest.fixture
def make_tx():
    """Factory for gateway transactions paying RECEIVER from SENDER."""
    return make_gateway_tx


@pytest.fixture
def addresses():
    return {"receiver": RECEIVER, "sender": SENDER}


@pytest.fixture
async def ledger(tmp_path):
    """Create a temporary test ledger."""
    db = Ledger(str(tmp_path / "test.db"))
    await db.initialize()
    return db


@pytest.fixture
async def creator(ledger):
    """Free-tier creator C1 at the default 1% fee."""
    return await ledger.upsert_creator(
        Creator(creator_id="C1", subscription_tier=SubscriptionTier.FREE, fee_opt_in=True, fee_basis_points=100)
    )


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def webhook_requests():
    """Requests seen by the mock webhook transport."""
    return []


@pytest.fixture
def webhook_transport(webhook_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(200, json={"ok": True})

    return httpx.MockTransport(handler)


@pytest.fixture
async def core(ledger, fake_cache, gateway, notifier, webhook_transport):
    """A fully wired core with a 50-sat dust floor and no retry sleeps."""
    dispatcher = WebhookDispatcher(ledger, transport=webhook_transport)
    settlement = build_core(
        fake_cache,
        ledger=ledger,
        gateway=gateway,
        notifier=notifier,
        policy=MicropaymentPolicy(dust_limit_sats=50),
        webhooks=dispatcher,
    )
    settlement.payments.gateway_retries = 0
    yield settlement
    await settlement.tracker.stop()
    await dispatcher.close()
