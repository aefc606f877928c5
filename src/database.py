"""SQLite ledger for the settlement core.

Durable store of creators, payment intents, transactions, withdrawals and
webhooks. The ledger is the system of record: the balance cache and the
confirmation tracker's pending set are both rebuildable from it.
"""

import asyncio
import json
import secrets
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite

from .config import config
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_utils import get_logger
from .models import (
    Balance,
    Creator,
    IntentStatus,
    MicropaymentStats,
    PaymentIntent,
    Transaction,
    Webhook,
    Withdrawal,
    WithdrawalStatus,
    utcnow,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Creator accounts (owned by the account service, read here)
CREATE TABLE IF NOT EXISTS creators (
    creator_id TEXT PRIMARY KEY,
    display_name TEXT,
    subscription_tier TEXT NOT NULL DEFAULT 'free'
        CHECK(subscription_tier IN ('free', 'pro', 'business')),
    fee_opt_in INTEGER NOT NULL DEFAULT 1,
    fee_basis_points INTEGER,
    created_at TEXT NOT NULL
);

-- Payment intents
CREATE TABLE IF NOT EXISTS payment_intents (
    intent_id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    amount_sats INTEGER CHECK(amount_sats IS NULL OR amount_sats >= 0),
    amount_usd REAL,
    title TEXT,
    description TEXT,
    content_url TEXT,
    content_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    is_recurring INTEGER NOT NULL DEFAULT 0,
    recurrence_interval TEXT,
    expires_at TEXT,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK(status IN ('active', 'expired', 'fulfilled')),
    created_at TEXT NOT NULL
);

-- Verified transactions (txid uniqueness is the idempotency guard)
CREATE TABLE IF NOT EXISTS transactions (
    txid TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    intent_id TEXT,
    amount_sats INTEGER NOT NULL CHECK(amount_sats >= 0),
    fee_sats INTEGER NOT NULL DEFAULT 0,
    sender_address TEXT,
    receiver_address TEXT,
    confirmations INTEGER NOT NULL DEFAULT 0,
    is_confirmed INTEGER NOT NULL DEFAULT 0,
    confirmed_at TEXT,
    block_height INTEGER,
    payload TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    indexed_at TEXT NOT NULL
);

-- Withdrawals
CREATE TABLE IF NOT EXISTS withdrawals (
    withdrawal_id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    amount_sats INTEGER NOT NULL CHECK(amount_sats >= 0),
    fee_sats INTEGER NOT NULL DEFAULT 0 CHECK(fee_sats >= 0),
    network_fee_sats INTEGER NOT NULL DEFAULT 0,
    to_address TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'processing', 'completed', 'failed')),
    txid TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Webhook subscriptions
CREATE TABLE IF NOT EXISTS webhooks (
    webhook_id TEXT PRIMARY KEY,
    creator_id TEXT NOT NULL,
    url TEXT NOT NULL,
    events TEXT NOT NULL,
    secret TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_triggered_at TEXT,
    created_at TEXT NOT NULL
);

-- Business metrics (fee revenue and friends)
CREATE TABLE IF NOT EXISTS business_metrics (
    metric_id TEXT PRIMARY KEY,
    metric_date TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    creator_id TEXT,
    value INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_intents_creator ON payment_intents(creator_id);
CREATE INDEX IF NOT EXISTS idx_transactions_creator ON transactions(creator_id);
CREATE INDEX IF NOT EXISTS idx_transactions_confirmed ON transactions(is_confirmed);
CREATE INDEX IF NOT EXISTS idx_withdrawals_creator ON withdrawals(creator_id);
CREATE INDEX IF NOT EXISTS idx_webhooks_creator ON webhooks(creator_id);
"""

# Fields a fulfilled intent may still change
DESCRIPTIVE_INTENT_FIELDS = {"title", "description", "content_url", "metadata", "amount_usd"}
UPDATABLE_INTENT_FIELDS = DESCRIPTIVE_INTENT_FIELDS | {
    "amount_sats",
    "recurrence_interval",
    "expires_at",
    "status",
}
UPDATABLE_TRANSACTION_FIELDS = {
    "confirmations",
    "is_confirmed",
    "confirmed_at",
    "block_height",
    "payload",
    "metadata",
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Ledger:
    """Async repository interface over the settlement ledger."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Ledger initialized at {self.db_path}")

    # Creator operations
    async def upsert_creator(self, creator: Creator) -> Creator:
        """Insert or replace the fee-relevant view of a creator account."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO creators
                (creator_id, display_name, subscription_tier, fee_opt_in, fee_basis_points, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(creator_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    subscription_tier = excluded.subscription_tier,
                    fee_opt_in = excluded.fee_opt_in,
                    fee_basis_points = excluded.fee_basis_points
                """,
                (
                    creator.creator_id,
                    creator.display_name,
                    creator.subscription_tier.value,
                    1 if creator.fee_opt_in else 0,
                    creator.fee_basis_points,
                    creator.created_at.isoformat(),
                ),
            )
            await db.commit()
        return creator

    async def get_creator(self, creator_id: str) -> Optional[Creator]:
        """Get a creator by ID, or None if unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM creators WHERE creator_id = ?",
                (creator_id,),
            )
            row = await cursor.fetchone()

        if row:
            return Creator(
                creator_id=row["creator_id"],
                display_name=row["display_name"],
                subscription_tier=row["subscription_tier"],
                fee_opt_in=bool(row["fee_opt_in"]),
                fee_basis_points=row["fee_basis_points"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
        return None

    async def set_creator_fee_opt_in(self, creator_id: str, opt_in: bool) -> None:
        """Update a creator's fee opt-in flag.

        Raises:
            NotFoundError: If the creator does not exist.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE creators SET fee_opt_in = ? WHERE creator_id = ?",
                (1 if opt_in else 0, creator_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Creator", creator_id)

    # Payment intent operations
    async def create_payment_intent(self, intent: PaymentIntent) -> PaymentIntent:
        """Persist a new payment intent."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO payment_intents
                (intent_id, creator_id, kind, amount_sats, amount_usd, title, description,
                 content_url, content_id, metadata, is_recurring, recurrence_interval,
                 expires_at, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    intent.intent_id,
                    intent.creator_id,
                    intent.kind.value,
                    intent.amount_sats,
                    intent.amount_usd,
                    intent.title,
                    intent.description,
                    intent.content_url,
                    intent.content_id,
                    json.dumps(intent.metadata, default=str),
                    1 if intent.is_recurring else 0,
                    intent.recurrence_interval,
                    _iso(intent.expires_at),
                    intent.status.value,
                    intent.created_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Created payment intent: {intent.intent_id}")
        return intent

    async def get_payment_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        """Get a payment intent by ID, or None if unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payment_intents WHERE intent_id = ?",
                (intent_id,),
            )
            row = await cursor.fetchone()

        if row:
            return PaymentIntent(
                intent_id=row["intent_id"],
                creator_id=row["creator_id"],
                kind=row["kind"],
                amount_sats=row["amount_sats"],
                amount_usd=row["amount_usd"],
                title=row["title"],
                description=row["description"],
                content_url=row["content_url"],
                content_id=row["content_id"],
                metadata=json.loads(row["metadata"]),
                is_recurring=bool(row["is_recurring"]),
                recurrence_interval=row["recurrence_interval"],
                expires_at=_parse_dt(row["expires_at"]),
                status=row["status"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
        return None

    async def update_payment_intent(self, intent_id: str, **fields: Any) -> PaymentIntent:
        """Update intent fields.

        A fulfilled intent only accepts descriptive fields.

        Raises:
            NotFoundError: If the intent does not exist.
            ValidationError: On unknown fields or a non-descriptive change to a fulfilled intent.
        """
        unknown = set(fields) - UPDATABLE_INTENT_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update intent fields: {sorted(unknown)}")

        intent = await self.get_payment_intent(intent_id)
        if not intent:
            raise NotFoundError("Payment intent", intent_id)

        if intent.status == IntentStatus.FULFILLED and set(fields) - DESCRIPTIVE_INTENT_FIELDS:
            raise ValidationError(
                f"Payment intent {intent_id} is fulfilled; only descriptive fields may change"
            )

        if not fields:
            return intent

        assignments = []
        values: List[Any] = []
        for key, value in fields.items():
            assignments.append(f"{key} = ?")
            if key == "metadata":
                values.append(json.dumps(value, default=str))
            elif key == "expires_at":
                values.append(_iso(value))
            elif key == "status":
                values.append(IntentStatus(value).value)
            else:
                values.append(value)
        values.append(intent_id)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE payment_intents SET {', '.join(assignments)} WHERE intent_id = ?",
                values,
            )
            await db.commit()

        return await self.get_payment_intent(intent_id)

    # Transaction operations
    async def create_transaction(self, tx: Transaction) -> Transaction:
        """Insert a transaction exactly once.

        Raises:
            ConflictError: If the txid is already recorded.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO transactions
                    (txid, creator_id, intent_id, amount_sats, fee_sats, sender_address,
                     receiver_address, confirmations, is_confirmed, confirmed_at, block_height,
                     payload, metadata, indexed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tx.txid,
                        tx.creator_id,
                        tx.intent_id,
                        tx.amount_sats,
                        tx.fee_sats,
                        tx.sender_address,
                        tx.receiver_address,
                        tx.confirmations,
                        1 if tx.is_confirmed else 0,
                        _iso(tx.confirmed_at),
                        tx.block_height,
                        json.dumps(tx.payload, default=str),
                        json.dumps(tx.metadata, default=str),
                        tx.indexed_at.isoformat(),
                    ),
                )
                await db.commit()
        except sqlite3.IntegrityError:
            logger.warning(f"Transaction already recorded (idempotency): {tx.txid}")
            raise ConflictError("Transaction already recorded", details={"txid": tx.txid})

        logger.info(f"Created transaction: {tx.txid}")
        return tx

    async def get_transaction(self, txid: str) -> Optional[Transaction]:
        """Find a transaction by txid, or None if unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM transactions WHERE txid = ?", (txid,))
            row = await cursor.fetchone()
        return self._row_to_transaction(row) if row else None

    async def update_transaction(self, txid: str, **fields: Any) -> Optional[Transaction]:
        """Update confirmation-tracking fields of a transaction.

        ``is_confirmed`` never goes from true back to false and ``confirmed_at``
        keeps the first confirmation time.

        Returns:
            The updated transaction, or None if the txid is unknown.
        """
        unknown = set(fields) - UPDATABLE_TRANSACTION_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update transaction fields: {sorted(unknown)}")

        if not fields:
            return await self.get_transaction(txid)

        assignments = []
        values: List[Any] = []
        for key, value in fields.items():
            if key == "is_confirmed":
                assignments.append("is_confirmed = CASE WHEN is_confirmed = 1 THEN 1 ELSE ? END")
                values.append(1 if value else 0)
            elif key == "confirmed_at":
                assignments.append("confirmed_at = COALESCE(confirmed_at, ?)")
                values.append(_iso(value))
            elif key in ("payload", "metadata"):
                assignments.append(f"{key} = ?")
                values.append(json.dumps(value, default=str))
            else:
                assignments.append(f"{key} = ?")
                values.append(value)
        values.append(txid)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"UPDATE transactions SET {', '.join(assignments)} WHERE txid = ?",
                values,
            )
            await db.commit()

        return await self.get_transaction(txid)

    async def list_unconfirmed_transactions(self, limit: Optional[int] = None) -> List[Transaction]:
        """Unconfirmed transactions, oldest first."""
        query = "SELECT * FROM transactions WHERE is_confirmed = 0 ORDER BY indexed_at ASC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def list_batchable_transactions(
        self,
        creator_id: str,
        below_sats: int,
        since: datetime,
        limit: int,
    ) -> List[Transaction]:
        """Small unconfirmed transactions indexed after ``since``, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM transactions
                WHERE creator_id = ?
                  AND amount_sats < ?
                  AND is_confirmed = 0
                  AND indexed_at > ?
                ORDER BY indexed_at ASC
                LIMIT ?
                """,
                (creator_id, below_sats, since.isoformat(), limit),
            )
            rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def micropayment_stats(self, creator_id: str, max_amount_sats: int) -> MicropaymentStats:
        """Aggregate confirmed micropayments (amount <= max_amount_sats) for a creator."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(amount_sats), 0),
                    COALESCE(AVG(amount_sats), 0),
                    COALESCE(SUM(fee_sats), 0),
                    COUNT(DISTINCT sender_address)
                FROM transactions
                WHERE creator_id = ? AND is_confirmed = 1 AND amount_sats <= ?
                """,
                (creator_id, max_amount_sats),
            )
            count, total, avg, fees, senders = await cursor.fetchone()

        avg_fee = fees / count if count else 0
        fee_ratio = (avg_fee / avg) * 100 if avg else 0.0
        return MicropaymentStats(
            micropayment_count=count,
            micropayment_total=total,
            micropayment_avg=float(avg),
            micropayment_fees=fees,
            micropayment_senders=senders,
            avg_fee_ratio=fee_ratio,
            batching_recommended=fee_ratio > 5,
        )

    async def aggregate_balance(self, creator_id: str) -> Balance:
        """Authoritative balance for a creator.

        ``total_balance`` is confirmed receipts minus completed withdrawals
        (payout, service fee and network fee); ``unconfirmed_balance`` is the
        sum of receipts still awaiting confirmations.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN is_confirmed = 1 THEN amount_sats ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN is_confirmed = 0 THEN amount_sats ELSE 0 END), 0)
                FROM transactions
                WHERE creator_id = ?
                """,
                (creator_id,),
            )
            confirmed, unconfirmed = await cursor.fetchone()

            cursor = await db.execute(
                """
                SELECT COALESCE(SUM(amount_sats + fee_sats + network_fee_sats), 0)
                FROM withdrawals
                WHERE creator_id = ? AND status = 'completed'
                """,
                (creator_id,),
            )
            (withdrawn,) = await cursor.fetchone()

        return Balance(total_balance=confirmed - withdrawn, unconfirmed_balance=unconfirmed)

    # Withdrawal operations
    async def create_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        """Persist a withdrawal record."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO withdrawals
                (withdrawal_id, creator_id, amount_sats, fee_sats, network_fee_sats, to_address,
                 status, txid, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    withdrawal.withdrawal_id,
                    withdrawal.creator_id,
                    withdrawal.amount_sats,
                    withdrawal.fee_sats,
                    withdrawal.network_fee_sats,
                    withdrawal.to_address,
                    withdrawal.status.value,
                    withdrawal.txid,
                    json.dumps(withdrawal.metadata, default=str),
                    withdrawal.created_at.isoformat(),
                    withdrawal.updated_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Created withdrawal: {withdrawal.withdrawal_id}")
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: str) -> Optional[Withdrawal]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM withdrawals WHERE withdrawal_id = ?",
                (withdrawal_id,),
            )
            row = await cursor.fetchone()
        return self._row_to_withdrawal(row) if row else None

    async def list_withdrawals(
        self, creator_id: str, status: Optional[WithdrawalStatus] = None
    ) -> List[Withdrawal]:
        query = "SELECT * FROM withdrawals WHERE creator_id = ?"
        params: List[Any] = [creator_id]
        if status is not None:
            query += " AND status = ?"
            params.append(WithdrawalStatus(status).value)
        query += " ORDER BY created_at DESC"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_withdrawal(row) for row in rows]

    async def update_withdrawal_status(
        self,
        withdrawal_id: str,
        status: WithdrawalStatus,
        txid: Optional[str] = None,
    ) -> Withdrawal:
        """Update withdrawal status (and txid once broadcast).

        Raises:
            NotFoundError: If the withdrawal does not exist.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE withdrawals
                SET status = ?, txid = COALESCE(?, txid), updated_at = ?
                WHERE withdrawal_id = ?
                """,
                (WithdrawalStatus(status).value, txid, utcnow().isoformat(), withdrawal_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError("Withdrawal", withdrawal_id)
        logger.info(f"Updated withdrawal {withdrawal_id} status to {WithdrawalStatus(status).value}")
        return await self.get_withdrawal(withdrawal_id)

    # Webhook operations
    async def create_webhook(
        self,
        creator_id: str,
        url: str,
        events: Optional[List[str]] = None,
        is_active: bool = True,
    ) -> Webhook:
        """Register a webhook endpoint with a freshly generated signing secret."""
        kwargs: Dict[str, Any] = {}
        if events is not None:
            kwargs["events"] = list(events)
        webhook = Webhook(
            webhook_id=str(uuid.uuid4()),
            creator_id=creator_id,
            url=url,
            secret=secrets.token_hex(32),
            is_active=is_active,
            **kwargs,
        )
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO webhooks
                (webhook_id, creator_id, url, events, secret, is_active, failure_count,
                 last_triggered_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    webhook.webhook_id,
                    webhook.creator_id,
                    webhook.url,
                    json.dumps(webhook.events),
                    webhook.secret,
                    1 if webhook.is_active else 0,
                    webhook.failure_count,
                    None,
                    webhook.created_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Created webhook {webhook.webhook_id} for creator {creator_id}")
        return webhook

    async def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM webhooks WHERE webhook_id = ?", (webhook_id,))
            row = await cursor.fetchone()
        return self._row_to_webhook(row) if row else None

    async def list_webhooks(self, creator_id: str, active_only: bool = True) -> List[Webhook]:
        query = "SELECT * FROM webhooks WHERE creator_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at DESC"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, (creator_id,))
            rows = await cursor.fetchall()
        return [self._row_to_webhook(row) for row in rows]

    async def record_webhook_success(self, webhook_id: str) -> None:
        """Reset the failure counter and stamp the delivery time."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE webhooks SET failure_count = 0, last_triggered_at = ? WHERE webhook_id = ?",
                (utcnow().isoformat(), webhook_id),
            )
            await db.commit()

    async def record_webhook_failure(self, webhook_id: str) -> int:
        """Increment the consecutive-failure counter.

        Returns:
            The counter value after the increment (0 if the webhook is unknown).
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "UPDATE webhooks SET failure_count = failure_count + 1 WHERE webhook_id = ?",
                    (webhook_id,),
                )
                await db.commit()
                cursor = await db.execute(
                    "SELECT failure_count FROM webhooks WHERE webhook_id = ?",
                    (webhook_id,),
                )
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def deactivate_webhook(self, webhook_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE webhooks SET is_active = 0 WHERE webhook_id = ?",
                (webhook_id,),
            )
            await db.commit()
        logger.info(f"Deactivated webhook {webhook_id}")

    # Business metrics
    async def record_business_metric(
        self,
        metric_type: str,
        value: int,
        creator_id: Optional[str] = None,
        metric_date: Optional[str] = None,
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO business_metrics
                (metric_id, metric_date, metric_type, creator_id, value, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    metric_date or utcnow().date().isoformat(),
                    metric_type,
                    creator_id,
                    value,
                    utcnow().isoformat(),
                ),
            )
            await db.commit()

    async def sum_business_metric(self, metric_type: str, creator_id: Optional[str] = None) -> int:
        query = "SELECT COALESCE(SUM(value), 0) FROM business_metrics WHERE metric_type = ?"
        params: List[Any] = [metric_type]
        if creator_id is not None:
            query += " AND creator_id = ?"
            params.append(creator_id)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            (total,) = await cursor.fetchone()
        return total

    # Row mappers
    @staticmethod
    def _row_to_transaction(row: aiosqlite.Row) -> Transaction:
        return Transaction(
            txid=row["txid"],
            creator_id=row["creator_id"],
            intent_id=row["intent_id"],
            amount_sats=row["amount_sats"],
            fee_sats=row["fee_sats"],
            sender_address=row["sender_address"],
            receiver_address=row["receiver_address"],
            confirmations=row["confirmations"],
            is_confirmed=bool(row["is_confirmed"]),
            confirmed_at=_parse_dt(row["confirmed_at"]),
            block_height=row["block_height"],
            payload=json.loads(row["payload"]),
            metadata=json.loads(row["metadata"]),
            indexed_at=datetime.fromisoformat(row["indexed_at"]),
        )

    @staticmethod
    def _row_to_withdrawal(row: aiosqlite.Row) -> Withdrawal:
        return Withdrawal(
            withdrawal_id=row["withdrawal_id"],
            creator_id=row["creator_id"],
            amount_sats=row["amount_sats"],
            fee_sats=row["fee_sats"],
            network_fee_sats=row["network_fee_sats"],
            to_address=row["to_address"],
            status=row["status"],
            txid=row["txid"],
            metadata=json.loads(row["metadata"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_webhook(row: aiosqlite.Row) -> Webhook:
        return Webhook(
            webhook_id=row["webhook_id"],
            creator_id=row["creator_id"],
            url=row["url"],
            events=json.loads(row["events"]),
            secret=row["secret"],
            is_active=bool(row["is_active"]),
            failure_count=row["failure_count"],
            last_triggered_at=_parse_dt(row["last_triggered_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
