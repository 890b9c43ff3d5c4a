"""SQLite persistence for PayAgent.

Stores payment requests, the fee ledger, fee configuration, API credentials
and webhook subscriptions. The core only relies on get/put and
update-if-status style operations, so any engine offering those would do.
"""

import asyncio
import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import aiosqlite

from .config import config
from .exceptions import TransactionAlreadyUsedError
from .logging_utils import get_logger
from .models import (
    AuthCredential,
    FeeConfig,
    FeeLedgerEntry,
    PaymentRequest,
    WebhookSubscription,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Payment requests (status transitions are update-if-status)
CREATE TABLE IF NOT EXISTS payment_requests (
    id TEXT PRIMARY KEY,
    creator_party_id TEXT,
    payer_party_id TEXT,
    amount TEXT NOT NULL,
    token TEXT NOT NULL,
    network TEXT NOT NULL,
    receiver TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL CHECK(status IN ('PENDING', 'PAID', 'EXPIRED')),
    tx_hash TEXT,
    created_at TEXT NOT NULL,
    paid_at TEXT,
    expires_at TEXT
);

-- Fee ledger (one row per settled payment request)
CREATE TABLE IF NOT EXISTS fee_ledger (
    id TEXT PRIMARY KEY,
    payment_request_id TEXT NOT NULL UNIQUE,
    payer_party_id TEXT,
    creator_party_id TEXT,
    fee_token TEXT NOT NULL,
    fee_total TEXT NOT NULL,
    platform_share TEXT NOT NULL,
    creator_reward TEXT NOT NULL,
    source_price TEXT,
    payer_incentive_balance TEXT NOT NULL,
    deducted_from_payment INTEGER NOT NULL,
    payment_amount TEXT NOT NULL,
    payment_token TEXT NOT NULL,
    treasury_wallet TEXT NOT NULL,
    payment_tx_hash TEXT NOT NULL,
    platform_fee_tx_hash TEXT,
    creator_reward_tx_hash TEXT,
    status TEXT NOT NULL CHECK(status IN ('COLLECTED', 'PENDING')),
    created_at TEXT NOT NULL,
    FOREIGN KEY (payment_request_id) REFERENCES payment_requests(id)
);

-- Fee configuration (single 'default' row)
CREATE TABLE IF NOT EXISTS fee_config (
    id TEXT PRIMARY KEY,
    incentive_token TEXT NOT NULL,
    flat_fee_amount TEXT NOT NULL,
    platform_share TEXT NOT NULL,
    creator_reward TEXT NOT NULL,
    treasury_wallet TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- API credentials (secret encrypted at rest)
CREATE TABLE IF NOT EXISTS api_credentials (
    key_id TEXT PRIMARY KEY,
    party_id TEXT NOT NULL,
    secret_encrypted TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    grace_until TEXT,
    revoked_at TEXT
);

-- Webhook subscriptions (secret encrypted at rest)
CREATE TABLE IF NOT EXISTS webhook_subscriptions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    url TEXT NOT NULL,
    events TEXT NOT NULL,
    secret_encrypted TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    failure_count INTEGER NOT NULL DEFAULT 0,
    last_success_at TEXT,
    last_failure_at TEXT,
    created_at TEXT NOT NULL
);

-- Indexes for common queries
CREATE UNIQUE INDEX IF NOT EXISTS idx_payment_requests_tx_hash
    ON payment_requests(tx_hash) WHERE tx_hash IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_payment_requests_status ON payment_requests(status);
CREATE INDEX IF NOT EXISTS idx_api_credentials_party ON api_credentials(party_id);
CREATE INDEX IF NOT EXISTS idx_webhook_subscriptions_owner ON webhook_subscriptions(owner_id);
"""


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class Database:
    """Async database interface for the PayAgent ledger."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        # Serializes read-modify-write sequences (counters, rotations)
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Fee configuration
    async def get_fee_config(self) -> Optional[FeeConfig]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM fee_config WHERE id = 'default'")
            row = await cursor.fetchone()

            if row:
                return FeeConfig(
                    id=row["id"],
                    incentive_token=row["incentive_token"],
                    flat_fee_amount=Decimal(row["flat_fee_amount"]),
                    platform_share=Decimal(row["platform_share"]),
                    creator_reward=Decimal(row["creator_reward"]),
                    treasury_wallet=row["treasury_wallet"],
                    updated_at=datetime.fromisoformat(row["updated_at"]),
                )
            return None

    async def save_fee_config(self, fee_config: FeeConfig) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO fee_config
                (id, incentive_token, flat_fee_amount, platform_share, creator_reward,
                 treasury_wallet, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    incentive_token = excluded.incentive_token,
                    flat_fee_amount = excluded.flat_fee_amount,
                    platform_share = excluded.platform_share,
                    creator_reward = excluded.creator_reward,
                    treasury_wallet = excluded.treasury_wallet,
                    updated_at = excluded.updated_at
                """,
                (
                    fee_config.id,
                    fee_config.incentive_token,
                    str(fee_config.flat_fee_amount),
                    str(fee_config.platform_share),
                    str(fee_config.creator_reward),
                    fee_config.treasury_wallet,
                    fee_config.updated_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info("Saved fee configuration")

    # Credential operations
    async def create_credential(self, credential: AuthCredential) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO api_credentials
                (key_id, party_id, secret_encrypted, expires_at, created_at, grace_until, revoked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    credential.key_id,
                    credential.party_id,
                    credential.secret_encrypted,
                    credential.expires_at.isoformat(),
                    credential.created_at.isoformat(),
                    _iso(credential.grace_until),
                    _iso(credential.revoked_at),
                ),
            )
            await db.commit()
        logger.info(f"Created credential {credential.key_id} for {credential.party_id}")

    def _credential_from_row(self, row: aiosqlite.Row) -> AuthCredential:
        return AuthCredential(
            key_id=row["key_id"],
            party_id=row["party_id"],
            secret_encrypted=row["secret_encrypted"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            grace_until=_dt(row["grace_until"]),
            revoked_at=_dt(row["revoked_at"]),
        )

    async def get_credential(self, key_id: str) -> Optional[AuthCredential]:
        """Exact-match lookup on the public key identifier."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM api_credentials WHERE key_id = ?",
                (key_id,),
            )
            row = await cursor.fetchone()
            return self._credential_from_row(row) if row else None

    async def list_credentials(self, party_id: str) -> list[AuthCredential]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM api_credentials WHERE party_id = ? ORDER BY created_at",
                (party_id,),
            )
            rows = await cursor.fetchall()
            return [self._credential_from_row(row) for row in rows]

    async def rotate_credential(self, new_credential: AuthCredential, grace_until: datetime) -> int:
        """Insert a replacement credential and start the grace window on the old ones.

        Returns:
            Number of credentials put into their grace window.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE api_credentials
                    SET grace_until = ?
                    WHERE party_id = ? AND grace_until IS NULL AND revoked_at IS NULL
                    """,
                    (grace_until.isoformat(), new_credential.party_id),
                )
                superseded = cursor.rowcount
                await db.execute(
                    """
                    INSERT INTO api_credentials
                    (key_id, party_id, secret_encrypted, expires_at, created_at, grace_until, revoked_at)
                    VALUES (?, ?, ?, ?, ?, NULL, NULL)
                    """,
                    (
                        new_credential.key_id,
                        new_credential.party_id,
                        new_credential.secret_encrypted,
                        new_credential.expires_at.isoformat(),
                        new_credential.created_at.isoformat(),
                    ),
                )
                await db.commit()
        logger.info(
            f"Rotated credentials for {new_credential.party_id}: "
            f"{superseded} superseded, new key {new_credential.key_id}"
        )
        return superseded

    async def revoke_credentials(self, party_id: str, revoked_at: datetime) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE api_credentials SET revoked_at = ? WHERE party_id = ? AND revoked_at IS NULL",
                (revoked_at.isoformat(), party_id),
            )
            await db.commit()
            revoked = cursor.rowcount
        logger.info(f"Revoked {revoked} credentials for {party_id}")
        return revoked

    # Webhook subscription operations
    def _subscription_from_row(self, row: aiosqlite.Row) -> WebhookSubscription:
        return WebhookSubscription(
            id=row["id"],
            owner_id=row["owner_id"],
            url=row["url"],
            events=json.loads(row["events"]),
            secret_encrypted=row["secret_encrypted"],
            active=bool(row["active"]),
            failure_count=row["failure_count"],
            last_success_at=_dt(row["last_success_at"]),
            last_failure_at=_dt(row["last_failure_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def create_subscription(self, subscription: WebhookSubscription) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO webhook_subscriptions
                (id, owner_id, url, events, secret_encrypted, active, failure_count,
                 last_success_at, last_failure_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.owner_id,
                    subscription.url,
                    json.dumps(subscription.events),
                    subscription.secret_encrypted,
                    1 if subscription.active else 0,
                    subscription.failure_count,
                    _iso(subscription.last_success_at),
                    _iso(subscription.last_failure_at),
                    subscription.created_at.isoformat(),
                ),
            )
            await db.commit()
        logger.info(f"Created webhook subscription {subscription.id} for {subscription.owner_id}")

    async def get_subscription(self, subscription_id: str) -> Optional[WebhookSubscription]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM webhook_subscriptions WHERE id = ?",
                (subscription_id,),
            )
            row = await cursor.fetchone()
            return self._subscription_from_row(row) if row else None

    async def list_subscriptions(self, owner_id: str) -> list[WebhookSubscription]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM webhook_subscriptions WHERE owner_id = ? ORDER BY created_at DESC",
                (owner_id,),
            )
            rows = await cursor.fetchall()
            return [self._subscription_from_row(row) for row in rows]

    async def get_subscriptions_for_event(
        self, owner_ids: list[str], event_type: str
    ) -> list[WebhookSubscription]:
        """Active subscriptions of ``owner_ids`` that include ``event_type``."""
        if not owner_ids:
            return []
        placeholders = ", ".join("?" for _ in owner_ids)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT * FROM webhook_subscriptions WHERE active = 1 AND owner_id IN ({placeholders})",
                tuple(owner_ids),
            )
            rows = await cursor.fetchall()
        subscriptions = [self._subscription_from_row(row) for row in rows]
        return [s for s in subscriptions if event_type in s.events]

    async def update_subscription(
        self, subscription_id: str, owner_id: str, updates: dict[str, Any]
    ) -> Optional[WebhookSubscription]:
        """Owner-scoped update of url/events/active. Returns None if not found."""
        columns = []
        values: list[Any] = []
        for key in ("url", "events", "active"):
            if key not in updates or updates[key] is None:
                continue
            value = updates[key]
            if key == "events":
                value = json.dumps(value)
            elif key == "active":
                value = 1 if value else 0
            columns.append(f"{key} = ?")
            values.append(value)

        # Re-activating resets the failure streak
        if updates.get("active") is True:
            columns.append("failure_count = 0")

        async with aiosqlite.connect(self.db_path) as db:
            if columns:
                cursor = await db.execute(
                    f"UPDATE webhook_subscriptions SET {', '.join(columns)} WHERE id = ? AND owner_id = ?",
                    (*values, subscription_id, owner_id),
                )
                await db.commit()
                if cursor.rowcount == 0:
                    return None

        subscription = await self.get_subscription(subscription_id)
        if subscription is None or subscription.owner_id != owner_id:
            return None
        return subscription

    async def delete_subscription(self, subscription_id: str, owner_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM webhook_subscriptions WHERE id = ? AND owner_id = ?",
                (subscription_id, owner_id),
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted webhook subscription {subscription_id}")
        return deleted

    async def mark_subscription_success(
        self, subscription_id: str, at: datetime
    ) -> Optional[WebhookSubscription]:
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE webhook_subscriptions
                    SET failure_count = 0, last_success_at = ?
                    WHERE id = ?
                    """,
                    (at.isoformat(), subscription_id),
                )
                await db.commit()
            return await self.get_subscription(subscription_id)

    async def mark_subscription_failure(
        self, subscription_id: str, at: datetime, max_failures: int
    ) -> Optional[WebhookSubscription]:
        """Increment the failure streak, deactivating at ``max_failures``."""
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    UPDATE webhook_subscriptions
                    SET failure_count = failure_count + 1,
                        last_failure_at = ?,
                        active = CASE WHEN failure_count + 1 >= ? THEN 0 ELSE active END
                    WHERE id = ?
                    """,
                    (at.isoformat(), max_failures, subscription_id),
                )
                await db.commit()
            return await self.get_subscription(subscription_id)

    # Payment request operations
    def _payment_from_row(self, row: aiosqlite.Row) -> PaymentRequest:
        return PaymentRequest(
            id=row["id"],
            creator_party_id=row["creator_party_id"],
            payer_party_id=row["payer_party_id"],
            amount=Decimal(row["amount"]),
            token=row["token"],
            network=row["network"],
            receiver=row["receiver"],
            description=row["description"],
            status=row["status"],
            tx_hash=row["tx_hash"],
            created_at=datetime.fromisoformat(row["created_at"]),
            paid_at=_dt(row["paid_at"]),
            expires_at=_dt(row["expires_at"]),
        )

    async def create_payment_request(self, request: PaymentRequest) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO payment_requests
                (id, creator_party_id, payer_party_id, amount, token, network, receiver,
                 description, status, tx_hash, created_at, paid_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id,
                    request.creator_party_id,
                    request.payer_party_id,
                    str(request.amount),
                    request.token,
                    request.network,
                    request.receiver,
                    request.description,
                    request.status,
                    request.tx_hash,
                    request.created_at.isoformat(),
                    _iso(request.paid_at),
                    _iso(request.expires_at),
                ),
            )
            await db.commit()
        logger.info(f"Created payment request {request.id}")

    async def get_payment_request(self, request_id: str) -> Optional[PaymentRequest]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM payment_requests WHERE id = ?",
                (request_id,),
            )
            row = await cursor.fetchone()
            return self._payment_from_row(row) if row else None

    async def mark_payment_paid_if_pending(
        self,
        request_id: str,
        tx_hash: str,
        payer_party_id: Optional[str],
        paid_at: datetime,
    ) -> bool:
        """PENDING -> PAID. Returns False if the request was not pending.

        Raises:
            TransactionAlreadyUsedError: If ``tx_hash`` already settled another request.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE payment_requests
                    SET status = 'PAID', tx_hash = ?, paid_at = ?,
                        payer_party_id = COALESCE(?, payer_party_id)
                    WHERE id = ? AND status = 'PENDING'
                    """,
                    (tx_hash, paid_at.isoformat(), payer_party_id, request_id),
                )
                await db.commit()
                updated = cursor.rowcount > 0
        except sqlite3.IntegrityError as e:
            raise TransactionAlreadyUsedError(tx_hash) from e

        if updated:
            logger.info(f"Payment request {request_id} marked PAID ({tx_hash})")
        else:
            logger.warning(f"Payment request {request_id} was not pending; status unchanged")
        return updated

    async def mark_payment_expired_if_pending(self, request_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE payment_requests SET status = 'EXPIRED' WHERE id = ? AND status = 'PENDING'",
                (request_id,),
            )
            await db.commit()
            return cursor.rowcount > 0

    # Fee ledger operations
    async def create_fee_entry(self, entry: FeeLedgerEntry) -> bool:
        """Insert a ledger row. Returns False if the request already has one."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO fee_ledger
                    (id, payment_request_id, payer_party_id, creator_party_id, fee_token,
                     fee_total, platform_share, creator_reward, source_price,
                     payer_incentive_balance, deducted_from_payment, payment_amount,
                     payment_token, treasury_wallet, payment_tx_hash, platform_fee_tx_hash,
                     creator_reward_tx_hash, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.payment_request_id,
                        entry.payer_party_id,
                        entry.creator_party_id,
                        entry.fee_token,
                        str(entry.fee_total),
                        str(entry.platform_share),
                        str(entry.creator_reward),
                        str(entry.source_price) if entry.source_price is not None else None,
                        str(entry.payer_incentive_balance),
                        1 if entry.deducted_from_payment else 0,
                        str(entry.payment_amount),
                        entry.payment_token,
                        entry.treasury_wallet,
                        entry.payment_tx_hash,
                        entry.platform_fee_tx_hash,
                        entry.creator_reward_tx_hash,
                        entry.status,
                        entry.created_at.isoformat(),
                    ),
                )
                await db.commit()
            logger.info(f"Recorded fee {entry.id} for payment {entry.payment_request_id}")
            return True
        except sqlite3.IntegrityError:
            logger.warning(f"Fee already recorded for payment {entry.payment_request_id}")
            return False

    async def get_fee_entry_for_request(self, request_id: str) -> Optional[FeeLedgerEntry]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM fee_ledger WHERE payment_request_id = ?",
                (request_id,),
            )
            row = await cursor.fetchone()

            if row:
                return FeeLedgerEntry(
                    id=row["id"],
                    payment_request_id=row["payment_request_id"],
                    payer_party_id=row["payer_party_id"],
                    creator_party_id=row["creator_party_id"],
                    fee_token=row["fee_token"],
                    fee_total=Decimal(row["fee_total"]),
                    platform_share=Decimal(row["platform_share"]),
                    creator_reward=Decimal(row["creator_reward"]),
                    source_price=_dec(row["source_price"]),
                    payer_incentive_balance=Decimal(row["payer_incentive_balance"]),
                    deducted_from_payment=bool(row["deducted_from_payment"]),
                    payment_amount=Decimal(row["payment_amount"]),
                    payment_token=row["payment_token"],
                    treasury_wallet=row["treasury_wallet"],
                    payment_tx_hash=row["payment_tx_hash"],
                    platform_fee_tx_hash=row["platform_fee_tx_hash"],
                    creator_reward_tx_hash=row["creator_reward_tx_hash"],
                    status=row["status"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
            return None


# Global database instance
db = Database()
