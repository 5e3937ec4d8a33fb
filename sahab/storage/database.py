"""
Billing storage using SQLite (bootstrap) -> PostgreSQL (production).

Consistency rules:
- Every mutation of a shared row is ONE statement: ``x = x + ?`` increments,
  conditional ``WHERE`` transitions, ``INSERT ... ON CONFLICT DO UPDATE``
  upserts and ``json_set`` metadata merges. Nothing is read into Python,
  modified and written back.
- Unique keys: usage (user_id, month, year), payment (provider,
  provider_txn_id), subscription (user_id).

Performance features:
- WAL journal so readers never block the single writer
- busy timeout so concurrent writers queue instead of failing
- Indexes on every lookup column
"""

import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sahab.models.media import Media, MediaType
from sahab.models.notification import Notification, NotificationType
from sahab.models.payment import Payment, PaymentStatus
from sahab.models.plan import Plan
from sahab.models.subscription import Subscription, SubscriptionStatus
from sahab.models.usage import UsagePeriod, UsageRecord

logger = logging.getLogger(__name__)

SCHEMA_TABLES = (
    "plans",
    "subscriptions",
    "usage_tracking",
    "payments",
    "media",
    "notifications",
    "webhook_events",
    "audit_log",
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class BillingDatabase:
    """
    Plans, subscriptions, usage counters, payments, media and notifications.

    Uses SQLite for bootstrapping (free, embedded). All public methods are
    ``async`` so call sites do not change when the backend moves to an async
    PostgreSQL driver.
    """

    def __init__(self, db_path: str = "./data/sahab.db", busy_timeout_seconds: float = 5.0):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a writer waits on a locked database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times and from several processes.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout_seconds)
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS plans (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    price INTEGER NOT NULL,
                    currency TEXT NOT NULL DEFAULT 'EGP',
                    storage_limit INTEGER NOT NULL,
                    max_upload_size INTEGER NOT NULL,
                    transformations_limit INTEGER NOT NULL,
                    team_members INTEGER NOT NULL,
                    support_level TEXT NOT NULL,
                    created_at TEXT NOT NULL,

                    CHECK (price >= 0),
                    CHECK (storage_limit >= 0),
                    CHECK (max_upload_size >= 0),
                    CHECK (transformations_limit >= 0),
                    CHECK (team_members >= -1)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    plan_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    FOREIGN KEY (plan_id) REFERENCES plans(id),
                    CHECK (status IN ('ACTIVE', 'EXPIRED', 'CANCELED'))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_tracking (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    month INTEGER NOT NULL,
                    year INTEGER NOT NULL,
                    storage_used INTEGER NOT NULL DEFAULT 0,
                    transformations_used INTEGER NOT NULL DEFAULT 0,
                    uploads_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    UNIQUE (user_id, month, year),
                    CHECK (month BETWEEN 1 AND 12),
                    CHECK (storage_used >= 0),
                    CHECK (transformations_used >= 0),
                    CHECK (uploads_count >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payments (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    provider TEXT NOT NULL,
                    provider_txn_id TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    UNIQUE (provider, provider_txn_id),
                    FOREIGN KEY (plan_id) REFERENCES plans(id),
                    CHECK (status IN ('PENDING', 'SUCCESS', 'FAILED')),
                    CHECK (amount >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS media (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    url TEXT NOT NULL DEFAULT '',
                    versions TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,

                    CHECK (type IN ('IMAGE', 'VIDEO')),
                    CHECK (size >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    action_url TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,

                    CHECK (read IN (0, 1))
                )
            """
            )

            # Every webhook delivery and what we did with it
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS webhook_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    received_at TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    order_id TEXT,
                    transaction_id TEXT,
                    payment_id TEXT,
                    detail TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_user_period "
                "ON usage_tracking(user_id, year, month)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_media_user_created ON media(user_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_webhook_events_order ON webhook_events(order_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")

            conn.commit()
            logger.info("Billing database initialized successfully")
            self._initialized = True

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed)."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_seconds,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    async def ping(self) -> bool:
        """Cheap liveness query for the readiness check."""
        conn = self._get_connection()
        return conn.execute("SELECT 1").fetchone()[0] == 1

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def seed_plans(self, plans: tuple[Plan, ...] | list[Plan]) -> int:
        """
        Insert reference plans that are not present yet.

        Existing rows are left alone so operators can tune limits in place.

        Returns:
            int: Number of plans inserted
        """
        conn = self._get_connection()
        now = _now()
        inserted = 0

        for plan in plans:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO plans (
                    id, name, price, currency, storage_limit, max_upload_size,
                    transformations_limit, team_members, support_level, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.id,
                    plan.name,
                    plan.price,
                    plan.currency,
                    plan.storage_limit,
                    plan.max_upload_size,
                    plan.transformations_limit,
                    plan.team_members,
                    plan.support_level,
                    now,
                ),
            )
            inserted += cursor.rowcount
        conn.commit()

        if inserted:
            logger.info(f"Seeded {inserted} plan(s)")
        return inserted

    async def get_plan(self, plan_id: str) -> Plan | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
        return self._row_to_plan(row) if row else None

    async def get_plan_by_name(self, name: str) -> Plan | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM plans WHERE name = ?", (name,)).fetchone()
        return self._row_to_plan(row) if row else None

    async def list_plans(self) -> list[Plan]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM plans ORDER BY price ASC").fetchall()
        return [self._row_to_plan(row) for row in rows]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def get_subscription(self, user_id: str) -> Subscription | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def upsert_subscription(
        self,
        user_id: str,
        plan_id: str,
        start_date: datetime,
        end_date: datetime,
    ) -> Subscription:
        """
        Insert or replace the user's single subscription row (atomic).

        Concurrent activations for the same user collapse onto one row; the
        last writer's plan and dates win.
        """
        conn = self._get_connection()
        now = _now()

        row = conn.execute(
            """
            INSERT INTO subscriptions (
                id, user_id, plan_id, status, start_date, end_date, created_at, updated_at
            ) VALUES (?, ?, ?, 'ACTIVE', ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                plan_id = excluded.plan_id,
                status = 'ACTIVE',
                start_date = excluded.start_date,
                end_date = excluded.end_date,
                updated_at = excluded.updated_at
            RETURNING *
            """,
            (
                _new_id("sub"),
                user_id,
                plan_id,
                start_date.isoformat(),
                end_date.isoformat(),
                now,
                now,
            ),
        ).fetchall()[0]
        conn.commit()

        await self._log_audit(
            user_id=user_id,
            action="UPSERT",
            resource_type="subscription",
            resource_id=row["id"],
            details=json.dumps({"plan_id": plan_id, "end_date": end_date.isoformat()}),
        )
        return self._row_to_subscription(row)

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    async def ensure_usage_row(self, user_id: str, period: UsagePeriod) -> None:
        """Create the zero row for (user, period) if missing. Safe under races."""
        conn = self._get_connection()
        now = _now()
        conn.execute(
            """
            INSERT OR IGNORE INTO usage_tracking (
                id, user_id, month, year, storage_used, transformations_used,
                uploads_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 0, 0, 0, ?, ?)
            """,
            (_new_id("usage"), user_id, period.month, period.year, now, now),
        )
        conn.commit()

    async def get_usage(self, user_id: str, period: UsagePeriod) -> UsageRecord | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM usage_tracking WHERE user_id = ? AND month = ? AND year = ?",
            (user_id, period.month, period.year),
        ).fetchone()
        return self._row_to_usage(row) if row else None

    async def increment_usage(
        self,
        user_id: str,
        period: UsagePeriod,
        size_bytes: int,
        transformations: int,
        storage_limit_bytes: int | None = None,
        transformations_limit: int | None = None,
    ) -> UsageRecord | None:
        """
        Add an upload to the period's counters (atomic).

        Args:
            user_id: Owner
            period: Usage period (row must exist, see ensure_usage_row)
            size_bytes: Bytes added to storage_used
            transformations: Units added to transformations_used
            storage_limit_bytes: If given, the update only applies while
                storage_used + size_bytes stays within it
            transformations_limit: If given, the update only applies while
                transformations_used + transformations stays within it

        Returns:
            UsageRecord: Counters after the update, or None if a guard
            rejected it (or the row does not exist)

        Performance: Single UPDATE statement, no SELECT needed
        """
        conn = self._get_connection()
        now = _now()

        rows = conn.execute(
            """
            UPDATE usage_tracking
            SET storage_used = storage_used + ?,
                transformations_used = transformations_used + ?,
                uploads_count = uploads_count + 1,
                updated_at = ?
            WHERE user_id = ? AND month = ? AND year = ?
              AND (? IS NULL OR storage_used + ? <= ?)
              AND (? IS NULL OR transformations_used + ? <= ?)
            RETURNING *
            """,
            (
                size_bytes,
                transformations,
                now,
                user_id,
                period.month,
                period.year,
                storage_limit_bytes,
                size_bytes,
                storage_limit_bytes,
                transformations_limit,
                transformations,
                transformations_limit,
            ),
        ).fetchall()
        conn.commit()

        return self._row_to_usage(rows[0]) if rows else None

    async def decrement_storage(
        self, user_id: str, period: UsagePeriod, size_bytes: int
    ) -> UsageRecord | None:
        """
        Subtract a deleted file from storage_used, clamped at zero (atomic).

        uploads_count and transformations_used are untouched.
        """
        conn = self._get_connection()
        now = _now()

        rows = conn.execute(
            """
            UPDATE usage_tracking
            SET storage_used = MAX(0, storage_used - ?),
                updated_at = ?
            WHERE user_id = ? AND month = ? AND year = ?
            RETURNING *
            """,
            (size_bytes, now, user_id, period.month, period.year),
        ).fetchall()
        conn.commit()

        return self._row_to_usage(rows[0]) if rows else None

    async def resync_usage_from_media(
        self,
        user_id: str,
        period: UsagePeriod,
        start: datetime,
        end: datetime,
    ) -> UsageRecord | None:
        """
        Recompute storage_used and uploads_count from the media rows created in [start, end).

        transformations_used is kept; media rows do not record it. Single
        UPDATE, so it cannot interleave with a concurrent increment.
        """
        conn = self._get_connection()
        now = _now()

        rows = conn.execute(
            """
            UPDATE usage_tracking
            SET storage_used = (
                    SELECT COALESCE(SUM(size), 0) FROM media
                    WHERE user_id = ? AND created_at >= ? AND created_at < ?
                ),
                uploads_count = (
                    SELECT COUNT(*) FROM media
                    WHERE user_id = ? AND created_at >= ? AND created_at < ?
                ),
                updated_at = ?
            WHERE user_id = ? AND month = ? AND year = ?
            RETURNING *
            """,
            (
                user_id,
                start.isoformat(),
                end.isoformat(),
                user_id,
                start.isoformat(),
                end.isoformat(),
                now,
                user_id,
                period.month,
                period.year,
            ),
        ).fetchall()
        conn.commit()

        return self._row_to_usage(rows[0]) if rows else None

    async def list_usage_between(
        self, user_id: str, first: UsagePeriod, last: UsagePeriod
    ) -> list[UsageRecord]:
        """Usage rows for first..last inclusive, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM usage_tracking
            WHERE user_id = ?
              AND (year * 12 + month) BETWEEN ? AND ?
            ORDER BY year ASC, month ASC
            """,
            (
                user_id,
                first.year * 12 + first.month,
                last.year * 12 + last.month,
            ),
        ).fetchall()
        return [self._row_to_usage(row) for row in rows]

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def create_payment(self, payment: Payment) -> Payment:
        """
        Record a payment.

        Raises:
            sqlite3.IntegrityError: If (provider, provider_txn_id) already exists
        """
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO payments (
                id, user_id, plan_id, amount, currency, status, provider,
                provider_txn_id, metadata, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payment.id,
                payment.user_id,
                payment.plan_id,
                payment.amount,
                payment.currency,
                payment.status.value,
                payment.provider,
                payment.provider_txn_id,
                json.dumps(payment.metadata, default=str),
                payment.created_at.isoformat(),
                payment.updated_at.isoformat(),
            ),
        )
        conn.commit()

        await self._log_audit(
            user_id=payment.user_id,
            action="CREATE",
            resource_type="payment",
            resource_id=payment.id,
            details=json.dumps(
                {"plan_id": payment.plan_id, "provider_txn_id": payment.provider_txn_id}
            ),
        )
        return payment

    async def get_payment(self, payment_id: str) -> Payment | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        return self._row_to_payment(row) if row else None

    async def get_payment_by_provider_txn(
        self, provider: str, provider_txn_id: str
    ) -> Payment | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM payments WHERE provider = ? AND provider_txn_id = ?",
            (provider, provider_txn_id),
        ).fetchone()
        return self._row_to_payment(row) if row else None

    async def transition_payment(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        metadata_patch: dict[str, Any] | None = None,
    ) -> bool:
        """
        Move a payment from one status to another (atomic compare-and-set).

        Args:
            payment_id: Payment to update
            from_status: Status the row must currently have
            to_status: New status
            metadata_patch: Top-level keys merged into the metadata blob

        Returns:
            bool: True if this call performed the transition, False if the
            row was not in ``from_status`` (another delivery won the race)
        """
        conn = self._get_connection()
        set_metadata, params = self._json_merge_expr(metadata_patch or {})

        cursor = conn.execute(
            f"""
            UPDATE payments
            SET status = ?, metadata = {set_metadata}, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (to_status.value, *params, _now(), payment_id, from_status.value),
        )
        conn.commit()

        transitioned = cursor.rowcount > 0
        if transitioned:
            await self._log_audit(
                action="TRANSITION",
                resource_type="payment",
                resource_id=payment_id,
                details=json.dumps({"from": from_status.value, "to": to_status.value}),
            )
        return transitioned

    async def list_payments(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """User's payments newest first, joined with the plan name."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT p.*, pl.name AS plan_name
            FROM payments p
            LEFT JOIN plans pl ON pl.id = p.plan_id
            WHERE p.user_id = ?
            ORDER BY p.created_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
        return [
            {"payment": self._row_to_payment(row), "plan_name": row["plan_name"]} for row in rows
        ]

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def create_media(self, media: Media) -> Media:
        """
        Insert a media row.

        Raises:
            sqlite3.IntegrityError: If the media id already exists
        """
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO media (id, user_id, type, size, url, versions, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                media.id,
                media.user_id,
                media.type.value,
                media.size,
                media.url,
                json.dumps(media.versions),
                media.created_at.isoformat(),
            ),
        )
        conn.commit()
        return media

    async def get_media(self, media_id: str) -> Media | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
        if not row:
            return None
        return Media(
            id=row["id"],
            user_id=row["user_id"],
            type=MediaType(row["type"]),
            size=row["size"],
            url=row["url"],
            versions=json.loads(row["versions"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def delete_media(self, media_id: str, user_id: str) -> bool:
        """Delete a media row owned by ``user_id``. Returns False if nothing was deleted."""
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM media WHERE id = ? AND user_id = ?", (media_id, user_id)
        )
        conn.commit()

        if cursor.rowcount > 0:
            await self._log_audit(
                user_id=user_id, action="DELETE", resource_type="media", resource_id=media_id
            )
            return True
        return False

    async def media_type_breakdown(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        """Count and total size per media type uploaded in [start, end)."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT type, COUNT(*) AS count, COALESCE(SUM(size), 0) AS total_size
            FROM media
            WHERE user_id = ? AND created_at >= ? AND created_at < ?
            GROUP BY type
            ORDER BY type
            """,
            (user_id, start.isoformat(), end.isoformat()),
        ).fetchall()
        return [dict(row) for row in rows]

    async def daily_uploads(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        """Uploads per UTC day in [start, end)."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT substr(created_at, 1, 10) AS date,
                   COUNT(*) AS uploads,
                   COALESCE(SUM(size), 0) AS total_size
            FROM media
            WHERE user_id = ? AND created_at >= ? AND created_at < ?
            GROUP BY date
            ORDER BY date
            """,
            (user_id, start.isoformat(), end.isoformat()),
        ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def create_notification(self, notification: Notification) -> Notification:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO notifications (
                id, user_id, type, title, message, action_url, metadata, read, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.id,
                notification.user_id,
                notification.type.value,
                notification.title,
                notification.message,
                notification.action_url,
                json.dumps(notification.metadata, default=str),
                int(notification.read),
                notification.created_at.isoformat(),
            ),
        )
        conn.commit()
        return notification

    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False
    ) -> list[Notification]:
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT * FROM notifications
            WHERE user_id = ? AND (? = 0 OR read = 0)
            ORDER BY created_at DESC LIMIT ?
            """,
            (user_id, int(unread_only), limit),
        ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    async def count_unread_notifications(self, user_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read = 0", (user_id,)
        ).fetchone()
        return row[0]

    async def set_notification_read(
        self, notification_id: str, user_id: str, read: bool = True
    ) -> Notification | None:
        """Update the read flag of the user's notification; None if it is not theirs."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            UPDATE notifications SET read = ?
            WHERE id = ? AND user_id = ?
            RETURNING *
            """,
            (int(read), notification_id, user_id),
        ).fetchall()
        conn.commit()
        return self._row_to_notification(rows[0]) if rows else None

    async def mark_all_notifications_read(self, user_id: str) -> int:
        """Mark every unread notification of the user read. Returns how many changed."""
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0", (user_id,)
        )
        conn.commit()
        return cursor.rowcount

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM notifications WHERE id = ? AND user_id = ?", (notification_id, user_id)
        )
        conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Webhook deliveries and audit
    # ------------------------------------------------------------------

    async def record_webhook_event(
        self,
        provider: str,
        outcome: str,
        order_id: str | None = None,
        transaction_id: str | None = None,
        payment_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO webhook_events (
                received_at, provider, outcome, order_id, transaction_id, payment_id, detail
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (_now(), provider, outcome, order_id, transaction_id, payment_id, detail),
        )
        conn.commit()

    async def list_webhook_events(self, order_id: str | None = None) -> list[dict[str, Any]]:
        conn = self._get_connection()
        if order_id is None:
            rows = conn.execute("SELECT * FROM webhook_events ORDER BY id").fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM webhook_events WHERE order_id = ? ORDER BY id", (order_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    async def _log_audit(
        self,
        action: str,
        resource_type: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        details: str | None = None,
    ) -> None:
        """
        Log audit event.

        Args:
            action: Action performed (CREATE, UPSERT, TRANSITION, DELETE)
            resource_type: Type of resource (payment, subscription, media)
            user_id: Affected user
            resource_id: ID of affected resource
            details: Additional details (JSON string)
        """
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO audit_log (
                timestamp, user_id, action, resource_type, resource_id, details
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (_now(), user_id, action, resource_type, resource_id, details),
        )
        conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _json_merge_expr(patch: dict[str, Any]) -> tuple[str, list[Any]]:
        """
        SQL expression merging ``patch`` into the ``metadata`` column.

        Uses json_set with bound paths and values so nested nulls in
        gateway payloads survive (json_patch would drop them).
        """
        if not patch:
            return "metadata", []

        args: list[Any] = []
        placeholders = []
        for key, value in patch.items():
            placeholders.append("?, json(?)")
            args.append(f'$."{key}"')
            args.append(json.dumps(value, default=str))
        return f"json_set(metadata, {', '.join(placeholders)})", args

    @staticmethod
    def _row_to_plan(row: sqlite3.Row) -> Plan:
        return Plan(
            id=row["id"],
            name=row["name"],
            price=row["price"],
            currency=row["currency"],
            storage_limit=row["storage_limit"],
            max_upload_size=row["max_upload_size"],
            transformations_limit=row["transformations_limit"],
            team_members=row["team_members"],
            support_level=row["support_level"],
        )

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            plan_id=row["plan_id"],
            status=SubscriptionStatus(row["status"]),
            start_date=datetime.fromisoformat(row["start_date"]),
            end_date=datetime.fromisoformat(row["end_date"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_usage(row: sqlite3.Row) -> UsageRecord:
        return UsageRecord(
            id=row["id"],
            user_id=row["user_id"],
            month=row["month"],
            year=row["year"],
            storage_used=row["storage_used"],
            transformations_used=row["transformations_used"],
            uploads_count=row["uploads_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            type=NotificationType(row["type"]),
            title=row["title"],
            message=row["message"],
            action_url=row["action_url"],
            metadata=json.loads(row["metadata"]),
            read=bool(row["read"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_payment(row: sqlite3.Row) -> Payment:
        return Payment(
            id=row["id"],
            user_id=row["user_id"],
            plan_id=row["plan_id"],
            amount=row["amount"],
            currency=row["currency"],
            status=PaymentStatus(row["status"]),
            provider=row["provider"],
            provider_txn_id=row["provider_txn_id"],
            metadata=json.loads(row["metadata"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


# Global instance
_db: BillingDatabase | None = None


async def get_billing_db() -> BillingDatabase:
    """
    Get global billing database instance.

    Returns:
        BillingDatabase: Initialized database
    """
    global _db
    if _db is None:
        from sahab.config import get_settings

        settings = get_settings()
        _db = BillingDatabase(
            db_path=settings.database.path,
            busy_timeout_seconds=settings.database.busy_timeout_seconds,
        )
        await _db.initialize()
    return _db


def set_billing_db(db: BillingDatabase | None) -> None:
    """Replace the global instance (application startup and tests)."""
    global _db
    _db = db
