"""Confirmation tracking for unconfirmed payments.

The pending set is a bounded, derived view of ledger rows with
``is_confirmed = 0``; ``rehydrate()`` rebuilds it after a restart.
"""

import asyncio
from typing import Dict, List, Optional

from src.config import config
from src.database import Ledger
from src.logging_utils import CorrelationIdContext, get_logger
from src.models import PendingPayment, Transaction, utcnow

from .balance_cache import BalanceCache
from .gateway import BlockchainGateway
from .notifications import NotificationFanout
from .webhooks import WebhookDispatcher

logger = get_logger(__name__)


class ConfirmationTracker:
    """Polls the gateway for pending transactions until confirmed or abandoned."""

    def __init__(
        self,
        ledger: Ledger,
        gateway: BlockchainGateway,
        balance_cache: BalanceCache,
        notifier: NotificationFanout,
        webhooks: WebhookDispatcher,
        min_confirmations: Optional[int] = None,
        max_checks: Optional[int] = None,
        max_pending: Optional[int] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.balance_cache = balance_cache
        self.notifier = notifier
        self.webhooks = webhooks
        self.min_confirmations = config.min_confirmations if min_confirmations is None else min_confirmations
        self.max_checks = config.confirmation_max_checks if max_checks is None else max_checks
        self.max_pending = config.max_pending_payments if max_pending is None else max_pending
        self.interval_seconds = (
            config.confirmation_check_interval_seconds if interval_seconds is None else interval_seconds
        )
        self._pending: Dict[str, PendingPayment] = {}
        self._scan_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, txid: str) -> bool:
        return txid in self._pending

    def pending(self) -> List[PendingPayment]:
        return list(self._pending.values())

    def register(self, txid: str, creator_id: str) -> bool:
        """Start tracking a transaction.

        Returns:
            False when the pending set is full; the row stays unconfirmed in
            the ledger and is picked up by the next ``rehydrate()``.
        """
        if txid in self._pending:
            return True
        if len(self._pending) >= self.max_pending:
            logger.warning(f"Pending set full ({self.max_pending}); not tracking {txid}")
            return False
        self._pending[txid] = PendingPayment(txid=txid, creator_id=creator_id, indexed_at=utcnow())
        logger.debug(f"Tracking {txid} for creator {creator_id}")
        return True

    async def rehydrate(self) -> int:
        """Rebuild the pending set from unconfirmed ledger rows.

        Returns:
            Number of transactions newly registered.
        """
        rows = await self.ledger.list_unconfirmed_transactions(limit=self.max_pending)
        added = 0
        for tx in rows:
            if tx.txid not in self._pending and self.register(tx.txid, tx.creator_id):
                added += 1
        logger.info(f"Rehydrated {added} pending payments from ledger")
        return added

    async def run_once(self) -> None:
        """Scan every pending transaction once, serially."""
        async with self._scan_lock:
            if not self._pending:
                return
            with CorrelationIdContext(prefix="scan"):
                for txid in list(self._pending):
                    pending = self._pending.get(txid)
                    if pending is None:
                        continue
                    try:
                        await self._check(pending)
                    except Exception as e:
                        logger.error(f"Error checking pending payment {txid}: {e}", exc_info=True)
                        self._pending.pop(txid, None)

    async def _check(self, pending: PendingPayment) -> None:
        txid = pending.txid
        stored = await self.ledger.get_transaction(txid)
        if stored is None:
            logger.warning(f"Pending payment {txid} has no ledger row; dropping")
            self._pending.pop(txid, None)
            return

        chain_tx = await self.gateway.get_transaction(txid)
        confirmed_now = stored.is_confirmed
        if chain_tx is not None:
            confirmations = chain_tx.confirmations
            confirmed_now = stored.is_confirmed or confirmations >= self.min_confirmations

            if confirmations != stored.confirmations or confirmed_now != stored.is_confirmed:
                updated = await self.ledger.update_transaction(
                    txid,
                    confirmations=confirmations,
                    is_confirmed=confirmed_now,
                    confirmed_at=utcnow() if confirmed_now else None,
                    block_height=chain_tx.block_height,
                )
                await self.balance_cache.invalidate_balance(pending.creator_id)

                if updated is not None and updated.is_confirmed and not stored.is_confirmed:
                    logger.info(f"Payment confirmed: {txid} ({confirmations} confirmations)")
                    await self._announce_confirmed(pending.creator_id, updated)
        else:
            logger.info(f"Pending payment {txid} not visible on gateway yet")

        if confirmed_now or pending.check_count >= self.max_checks:
            if not confirmed_now:
                logger.info(f"Giving up tracking {txid} after {pending.check_count} checks")
            self._pending.pop(txid, None)
        else:
            pending.check_count += 1

    async def _announce_confirmed(self, creator_id: str, transaction: Transaction) -> None:
        try:
            await self.notifier.notify_payment_confirmed(creator_id, transaction)
        except Exception as e:
            logger.error(f"Confirmation notification failed for {transaction.txid}: {e}")
        await self.webhooks.trigger_payment_webhooks(creator_id, transaction)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in confirmation monitoring: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Run ``run_once`` every ``interval_seconds`` in a background task."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Payment confirmation monitoring started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Payment confirmation monitoring stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
