"""Ledger initialization script.

Run this to create the settlement ledger schema and, optionally, seed one creator.

    python scripts/init_ledger.py [creator_id] [tier]
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config
from src.database import Ledger
from src.logging_utils import get_logger, setup_logging
from src.models import Creator, SubscriptionTier

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Initialize the ledger."""
    ledger = Ledger()
    logger.info("Initializing settlement ledger...")
    logger.info(f"Ledger path: {ledger.db_path}")

    await ledger.initialize()

    if len(sys.argv) > 1:
        creator_id = sys.argv[1]
        tier = SubscriptionTier(sys.argv[2]) if len(sys.argv) > 2 else SubscriptionTier.FREE
        await ledger.upsert_creator(Creator(creator_id=creator_id, subscription_tier=tier))

        creator = await ledger.get_creator(creator_id)
        if creator is None:
            logger.error(f"Failed to seed creator {creator_id}")
            sys.exit(1)
        logger.info(f"Seeded creator {creator.creator_id} ({creator.subscription_tier.value} tier)")

    logger.info("Ledger initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
