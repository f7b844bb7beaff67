"""SQLite ledger for subscriptions and payment reconciliation.

Holds the subscription records created by the local subscription gateway and
the reconciliation outbox for transfers that moved funds without a recorded
subscription.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Optional

import aiosqlite

from .config import config
from .logging_utils import get_logger
from .models import ReconciliationRecord, Subscription, utc_now

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Subscriptions created after a payment
CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id TEXT PRIMARY KEY,
    user_address TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    billing_cycle TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('active', 'cancelled')),
    started_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    cancelled_at TEXT
);

-- Transfers awaiting a subscription (outbox)
CREATE TABLE IF NOT EXISTS reconciliations (
    reconciliation_id TEXT PRIMARY KEY,
    transaction_hash TEXT NOT NULL,
    user_address TEXT NOT NULL,
    receiver_address TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    billing_cycle TEXT NOT NULL,
    amount REAL NOT NULL,
    token_address TEXT NOT NULL,
    block_number INTEGER,
    error_message TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pending', 'processing', 'resolved', 'failed')),
    subscription_id TEXT,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    request_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_user_address ON subscriptions(user_address);
CREATE INDEX IF NOT EXISTS idx_subscriptions_status ON subscriptions(status);
CREATE INDEX IF NOT EXISTS idx_reconciliations_status ON reconciliations(status);
CREATE INDEX IF NOT EXISTS idx_reconciliations_tx_hash ON reconciliations(transaction_hash);
"""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async database interface for the subscription ledger."""

    def __init__(self, db_path: str = None):
        """Initialize database connection settings.

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
        logger.info(f"Database initialized at {self.db_path}")

    # Subscription operations
    async def create_subscription(self, subscription: Subscription) -> None:
        """Insert a subscription record.

        Args:
            subscription: Subscription to store.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO subscriptions
                (subscription_id, user_address, plan_id, billing_cycle, status,
                 started_at, expires_at, cancelled_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.user_address.lower(),
                    subscription.plan_id.value,
                    subscription.billing_cycle.value,
                    subscription.status,
                    subscription.started_at.isoformat(),
                    subscription.expires_at.isoformat(),
                    subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
                ),
            )
            await db.commit()
        logger.info(f"Created subscription: {subscription.id}")

    async def get_active_subscription(self, user_address: str) -> Optional[Subscription]:
        """Get the most recent unexpired active subscription of a user.

        Args:
            user_address: Subscriber wallet address (any case).

        Returns:
            Subscription if found, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM subscriptions
                WHERE user_address = ? AND status = 'active' AND expires_at > ?
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (user_address.lower(), utc_now().isoformat()),
            )
            row = await cursor.fetchone()

            if row:
                return self._row_to_subscription(row)
            return None

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM subscriptions WHERE subscription_id = ?",
                (subscription_id,),
            )
            row = await cursor.fetchone()
            return self._row_to_subscription(row) if row else None

    async def cancel_active_subscriptions(self, user_address: str) -> int:
        """Cancel every active subscription of a user.

        Returns:
            Number of subscriptions cancelled.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE subscriptions
                    SET status = 'cancelled', cancelled_at = ?
                    WHERE user_address = ? AND status = 'active'
                    """,
                    (utc_now().isoformat(), user_address.lower()),
                )
                await db.commit()
                cancelled = cursor.rowcount
        logger.info(f"Cancelled {cancelled} subscription(s) for {user_address}")
        return cancelled

    @staticmethod
    def _row_to_subscription(row) -> Subscription:
        return Subscription(
            id=row["subscription_id"],
            user_address=row["user_address"],
            plan_id=row["plan_id"],
            billing_cycle=row["billing_cycle"],
            status=row["status"],
            started_at=datetime.fromisoformat(row["started_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
            cancelled_at=_parse_dt(row["cancelled_at"]),
        )

    # Reconciliation operations
    async def record_reconciliation(
        self,
        transaction_hash: str,
        user_address: str,
        receiver_address: str,
        plan_id: str,
        billing_cycle: str,
        amount: float,
        token_address: str,
        error_message: str,
        block_number: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> ReconciliationRecord:
        """Store a transfer that still needs a subscription.

        Returns:
            The stored reconciliation record.
        """
        record = ReconciliationRecord(
            reconciliation_id=f"recon-{uuid.uuid4().hex[:12]}",
            transaction_hash=transaction_hash,
            user_address=user_address,
            receiver_address=receiver_address,
            plan_id=plan_id,
            billing_cycle=billing_cycle,
            amount=amount,
            token_address=token_address,
            block_number=block_number,
            error_message=error_message,
            request_id=request_id,
        )

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO reconciliations
                (reconciliation_id, transaction_hash, user_address, receiver_address,
                 plan_id, billing_cycle, amount, token_address, block_number,
                 error_message, status, subscription_id, created_at, resolved_at, request_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.reconciliation_id,
                    record.transaction_hash,
                    record.user_address,
                    record.receiver_address,
                    record.plan_id,
                    record.billing_cycle,
                    record.amount,
                    record.token_address,
                    record.block_number,
                    record.error_message,
                    record.status,
                    record.subscription_id,
                    record.created_at.isoformat(),
                    None,
                    record.request_id,
                ),
            )
            await db.commit()
        logger.info(
            f"Recorded reconciliation {record.reconciliation_id} for tx {transaction_hash}"
        )
        return record

    async def get_reconciliation(self, reconciliation_id: str) -> Optional[ReconciliationRecord]:
        """Get a reconciliation record by ID.

        Args:
            reconciliation_id: Reconciliation identifier.

        Returns:
            ReconciliationRecord if found, None otherwise.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM reconciliations WHERE reconciliation_id = ?",
                (reconciliation_id,),
            )
            row = await cursor.fetchone()
            return self._row_to_reconciliation(row) if row else None

    async def list_reconciliations(self, status: Optional[str] = "pending") -> list[ReconciliationRecord]:
        """List reconciliation records, oldest first.

        Args:
            status: Filter by status; None returns every record.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            if status is None:
                cursor = await db.execute("SELECT * FROM reconciliations ORDER BY created_at")
            else:
                cursor = await db.execute(
                    "SELECT * FROM reconciliations WHERE status = ? ORDER BY created_at",
                    (status,),
                )
            rows = await cursor.fetchall()
            return [self._row_to_reconciliation(row) for row in rows]

    async def claim_reconciliation(self, reconciliation_id: str) -> bool:
        """Move a pending reconciliation to processing.

        Only one caller can claim a given record.

        Returns:
            True if this call claimed the record.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE reconciliations SET status = 'processing'
                    WHERE reconciliation_id = ? AND status = 'pending'
                    """,
                    (reconciliation_id,),
                )
                await db.commit()
                return cursor.rowcount == 1

    async def release_reconciliation(self, reconciliation_id: str, error_message: str) -> None:
        """Return a claimed reconciliation to pending after a failed retry."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE reconciliations SET status = 'pending', error_message = ?
                WHERE reconciliation_id = ? AND status = 'processing'
                """,
                (error_message, reconciliation_id),
            )
            await db.commit()

    async def mark_reconciliation_failed(self, reconciliation_id: str, error_message: str) -> None:
        """Close a reconciliation whose transfer never moved funds."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE reconciliations SET status = 'failed', error_message = ?, resolved_at = ?
                WHERE reconciliation_id = ?
                """,
                (error_message, utc_now().isoformat(), reconciliation_id),
            )
            await db.commit()
        logger.warning(f"Reconciliation {reconciliation_id} failed: {error_message}")

    async def mark_reconciliation_resolved(self, reconciliation_id: str, subscription_id: str) -> None:
        """Mark a reconciliation as resolved by a created subscription.

        Args:
            reconciliation_id: Reconciliation to resolve.
            subscription_id: Subscription that now covers the transfer.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE reconciliations
                SET status = 'resolved', subscription_id = ?, resolved_at = ?
                WHERE reconciliation_id = ?
                """,
                (subscription_id, utc_now().isoformat(), reconciliation_id),
            )
            await db.commit()
        logger.info(f"Resolved reconciliation {reconciliation_id} with {subscription_id}")

    @staticmethod
    def _row_to_reconciliation(row) -> ReconciliationRecord:
        return ReconciliationRecord(
            reconciliation_id=row["reconciliation_id"],
            transaction_hash=row["transaction_hash"],
            user_address=row["user_address"],
            receiver_address=row["receiver_address"],
            plan_id=row["plan_id"],
            billing_cycle=row["billing_cycle"],
            amount=row["amount"],
            token_address=row["token_address"],
            block_number=row["block_number"],
            error_message=row["error_message"],
            status=row["status"],
            subscription_id=row["subscription_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            resolved_at=_parse_dt(row["resolved_at"]),
            request_id=row["request_id"],
        )


# Global database instance
db = Database()
