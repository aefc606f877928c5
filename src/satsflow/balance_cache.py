"""Cache-aside balance reads.

The ledger aggregation is authoritative; the cache only holds whole
snapshots under ``creator:{id}:balance`` for a bounded TTL. Cache failures
are logged and never fail a read.
"""

from typing import Optional

from src.cache import Cache
from src.config import config
from src.database import Ledger
from src.logging_utils import get_logger
from src.models import Balance

logger = get_logger(__name__)


def balance_key(creator_id: str) -> str:
    return f"creator:{creator_id}:balance"


class BalanceCache:
    """Balance snapshots in front of ``Ledger.aggregate_balance``."""

    def __init__(self, ledger: Ledger, cache: Cache, ttl_seconds: Optional[int] = None):
        self.ledger = ledger
        self.cache = cache
        self.ttl_seconds = config.balance_cache_ttl_seconds if ttl_seconds is None else ttl_seconds

    async def get_balance(self, creator_id: str) -> Balance:
        """Read the cached balance, recomputing from the ledger on a miss."""
        try:
            cached = await self.cache.get(balance_key(creator_id))
            if isinstance(cached, dict):
                return Balance.model_validate(cached)
        except Exception as e:
            logger.warning(f"Balance cache get failed for {creator_id}, falling back to ledger: {e}")

        balance = await self.ledger.aggregate_balance(creator_id)
        try:
            await self.set_balance(creator_id, balance)
        except Exception as e:
            logger.warning(f"Balance cache set after miss failed for {creator_id}: {e}")
        return balance

    async def set_balance(self, creator_id: str, balance: Balance) -> None:
        """Replace the cached snapshot wholesale."""
        await self.cache.set(balance_key(creator_id), balance.model_dump(), self.ttl_seconds)

    async def invalidate_balance(self, creator_id: str) -> None:
        """Drop the cached snapshot so the next read recomputes it."""
        try:
            await self.cache.delete(balance_key(creator_id))
        except Exception as e:
            logger.warning(f"Balance cache invalidate failed for {creator_id}: {e}")

    async def refresh_balance(self, creator_id: str) -> Balance:
        """Recompute from the ledger and repopulate the cache."""
        balance = await self.ledger.aggregate_balance(creator_id)
        try:
            await self.set_balance(creator_id, balance)
        except Exception as e:
            logger.warning(f"Balance cache refresh write failed for {creator_id}: {e}")
        return balance
