"""Process wiring for the settlement core.

``build_core()`` constructs every service once and hands out the shared
ledger, cache and gateway handles. ``python -m src.satsflow.runtime`` starts
the confirmation tracker against the configured ledger.
"""

import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

from src.cache import Cache, RedisCache, close_redis
from src.config import config, validate_config_for_service
from src.database import Ledger
from src.logging_utils import get_logger, setup_logging
from src.satsflow.balance_cache import BalanceCache
from src.satsflow.gateway import BlockchainGateway, RestBlockchainGateway
from src.satsflow.micropayments import MicropaymentPolicy
from src.satsflow.notifications import (
    AuditLog,
    BusinessMetrics,
    LoggingNotificationFanout,
    NotificationFanout,
    PriceFeed,
    StaticPriceFeed,
)
from src.satsflow.payments import PaymentService
from src.satsflow.tracking import ConfirmationTracker
from src.satsflow.webhooks import WebhookDispatcher
from src.satsflow.withdrawals import WithdrawalService

logger = get_logger(__name__)


@dataclass
class SettlementCore:
    """Every settlement service plus the handles they share."""

    ledger: Ledger
    cache: Cache
    gateway: BlockchainGateway
    balance_cache: BalanceCache
    policy: MicropaymentPolicy
    webhooks: WebhookDispatcher
    tracker: ConfirmationTracker
    payments: PaymentService
    withdrawals: WithdrawalService
    audit: AuditLog
    metrics: BusinessMetrics

    async def start(self) -> None:
        """Create the schema, rebuild the pending set and start tracking."""
        await self.ledger.initialize()
        await self.tracker.rehydrate()
        self.tracker.start()

    async def close(self) -> None:
        await self.tracker.stop()
        await self.webhooks.close()
        close_gateway = getattr(self.gateway, "close", None)
        if close_gateway is not None:
            await close_gateway()


def build_core(
    cache: Cache,
    ledger: Optional[Ledger] = None,
    gateway: Optional[BlockchainGateway] = None,
    notifier: Optional[NotificationFanout] = None,
    price_feed: Optional[PriceFeed] = None,
    policy: Optional[MicropaymentPolicy] = None,
    webhooks: Optional[WebhookDispatcher] = None,
) -> SettlementCore:
    """Construct one SettlementCore; unspecified collaborators come from config."""
    ledger = ledger or Ledger()
    gateway = gateway or RestBlockchainGateway()
    notifier = notifier or LoggingNotificationFanout()
    if price_feed is None:
        price_feed = StaticPriceFeed(config.bch_usd_price)
    policy = policy or MicropaymentPolicy()
    webhooks = webhooks or WebhookDispatcher(ledger)
    audit = AuditLog()
    metrics = BusinessMetrics(ledger)

    balance_cache = BalanceCache(ledger, cache)
    tracker = ConfirmationTracker(ledger, gateway, balance_cache, notifier, webhooks)
    payments = PaymentService(
        ledger,
        gateway,
        balance_cache,
        policy,
        tracker,
        webhooks,
        notifier,
        audit,
        price_feed=price_feed,
    )
    withdrawals = WithdrawalService(ledger, balance_cache, metrics, audit, notifier, webhooks)

    return SettlementCore(
        ledger=ledger,
        cache=cache,
        gateway=gateway,
        balance_cache=balance_cache,
        policy=policy,
        webhooks=webhooks,
        tracker=tracker,
        payments=payments,
        withdrawals=withdrawals,
        audit=audit,
        metrics=metrics,
    )


async def main() -> None:
    validate_config_for_service("tracker")
    setup_logging(config.log_level, config.log_format)

    logger.info("Starting settlement core...")
    cache = await RedisCache.connect()
    core = build_core(cache)
    await core.start()
    logger.info(
        f"Tracking {len(core.tracker)} pending payments every "
        f"{core.tracker.interval_seconds}s (ledger: {core.ledger.db_path})"
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down settlement core...")
        await core.close()
        await close_redis()


if __name__ == "__main__":
    asyncio.run(main())
