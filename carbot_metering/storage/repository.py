"""
Repository pattern for data access.

Handles the subscription, usage counter and billing event tables. The usage
counter store is the only writer of ``usage_tracking`` and increments rows
with a single upsert statement so concurrent writers never lose updates.
"""

import json
from datetime import date, datetime
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    BillingPeriod,
    DailyUsage,
    Subscription,
    SubscriptionStatus,
    WarningEvent,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the metering tables if they don't exist.

    ``usage_tracking`` rows are keyed by (tenant, metric, day) and are never
    deleted; ``billing_events`` is append-only.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        # WAL lets readers proceed while an increment holds the write lock
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                tenant_id TEXT PRIMARY KEY,
                tier_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_period_start TEXT NOT NULL,
                current_period_end TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_tracking (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                metric_name TEXT NOT NULL,
                usage_date TEXT NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity >= 0),
                billing_period_start TEXT NOT NULL,
                billing_period_end TEXT NOT NULL,
                UNIQUE (tenant_id, metric_name, usage_date)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS billing_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                metric_name TEXT NOT NULL,
                threshold INTEGER NOT NULL,
                period_start TEXT NOT NULL,
                event_data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_billing_events_period
            ON billing_events (tenant_id, metric_name, period_start)
        """)
        conn.commit()
    finally:
        conn.close()


class SubscriptionStore:
    """Read/write access to workshop subscriptions."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, tenant_id: str) -> Optional[Subscription]:
        """Return the tenant's subscription, or None if it has none."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT tenant_id, tier_id, status,
                       current_period_start, current_period_end
                FROM subscriptions
                WHERE tenant_id = ?
            """, (tenant_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return Subscription(
            tenant_id=row[0],
            tier_id=row[1],
            status=SubscriptionStatus(row[2]),
            period=BillingPeriod(
                start=date.fromisoformat(row[3]),
                end=date.fromisoformat(row[4])
            )
        )

    def upsert(self, subscription: Subscription) -> None:
        """Create the subscription or replace the tenant's existing one."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO subscriptions
                (tenant_id, tier_id, status, current_period_start,
                 current_period_end, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    tier_id = excluded.tier_id,
                    status = excluded.status,
                    current_period_start = excluded.current_period_start,
                    current_period_end = excluded.current_period_end,
                    updated_at = excluded.updated_at
            """, (
                subscription.tenant_id,
                subscription.tier_id,
                subscription.status.value,
                subscription.period.start.isoformat(),
                subscription.period.end.isoformat(),
                datetime.now().isoformat()
            ))
            conn.commit()
        finally:
            conn.close()


class UsageCounterStore:
    """Daily usage counters keyed by (tenant, metric, date)."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def upsert_add(
        self,
        tenant_id: str,
        metric: str,
        usage_date: date,
        delta: int,
        period: BillingPeriod
    ) -> int:
        """Atomically add ``delta`` to the day's counter, creating it if needed.

        The write lock is taken up front (``BEGIN IMMEDIATE``) and the
        increment happens inside SQLite, so concurrent callers serialize on
        the database instead of racing a read-modify-write.

        Args:
            tenant_id: Workshop identifier
            metric: Metric name, e.g. "leads"
            usage_date: Day the usage belongs to
            delta: Positive quantity to add
            period: Billing period the day was recorded under

        Returns:
            The counter value after the increment

        Raises:
            ValueError: If delta is not positive
            sqlite3.Error: If the write fails
        """
        if delta <= 0:
            raise ValueError("delta must be > 0")

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("""
                INSERT INTO usage_tracking
                (tenant_id, metric_name, usage_date, quantity,
                 billing_period_start, billing_period_end)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, metric_name, usage_date)
                DO UPDATE SET quantity = quantity + excluded.quantity
            """, (
                tenant_id,
                metric,
                usage_date.isoformat(),
                delta,
                period.start.isoformat(),
                period.end.isoformat()
            ))
            row = conn.execute("""
                SELECT quantity FROM usage_tracking
                WHERE tenant_id = ? AND metric_name = ? AND usage_date = ?
            """, (tenant_id, metric, usage_date.isoformat())).fetchone()
            conn.commit()
            return row[0]
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(
        self,
        tenant_id: str,
        metric: str,
        start: date,
        end: date
    ) -> List[DailyUsage]:
        """Return daily counters for one metric with ``start <= date < end``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT tenant_id, metric_name, usage_date, quantity
                FROM usage_tracking
                WHERE tenant_id = ? AND metric_name = ?
                  AND usage_date >= ? AND usage_date < ?
                ORDER BY usage_date
            """, (tenant_id, metric, start.isoformat(), end.isoformat()))
            return [_row_to_usage(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def daily(self, tenant_id: str, start: date, end: date) -> List[DailyUsage]:
        """Return all metrics' daily counters in ``[start, end)``, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT tenant_id, metric_name, usage_date, quantity
                FROM usage_tracking
                WHERE tenant_id = ? AND usage_date >= ? AND usage_date < ?
                ORDER BY usage_date DESC, metric_name
            """, (tenant_id, start.isoformat(), end.isoformat()))
            return [_row_to_usage(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def totals(self, tenant_id: str, start: date, end: date) -> Dict[str, int]:
        """Sum the daily counters per metric over ``[start, end)``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT metric_name, SUM(quantity)
                FROM usage_tracking
                WHERE tenant_id = ? AND usage_date >= ? AND usage_date < ?
                GROUP BY metric_name
            """, (tenant_id, start.isoformat(), end.isoformat()))
            return {row[0]: int(row[1] or 0) for row in cursor.fetchall()}
        finally:
            conn.close()


class EventSink:
    """Append-only sink for billing events such as usage warnings."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, event: WarningEvent) -> int:
        """Append an event and return its row id."""
        event_data = {
            "metric": event.metric,
            "warning_type": f"{event.threshold}_percent",
            "current_usage": event.quantity,
            "limit": event.limit,
            "message": event.message,
        }
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO billing_events
                (tenant_id, event_type, metric_name, threshold,
                 period_start, event_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                event.tenant_id,
                event.event_type,
                event.metric,
                event.threshold,
                event.period_start.isoformat(),
                json.dumps(event_data, ensure_ascii=False),
                event.timestamp.isoformat()
            ))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def highest_threshold(self, tenant_id: str, metric: str, period_start: date) -> int:
        """Return the highest threshold already recorded for the period, or 0."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT MAX(threshold) FROM billing_events
                WHERE tenant_id = ? AND metric_name = ? AND period_start = ?
            """, (tenant_id, metric, period_start.isoformat())).fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()

    def fetch_events(self, tenant_id: str, limit: int = 100) -> List[WarningEvent]:
        """Return the tenant's events, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, tenant_id, event_type, metric_name, threshold,
                       period_start, event_data, created_at
                FROM billing_events
                WHERE tenant_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """, (tenant_id, limit))
            events = []
            for row in cursor.fetchall():
                data = json.loads(row[6])
                events.append(WarningEvent(
                    id=row[0],
                    tenant_id=row[1],
                    event_type=row[2],
                    metric=row[3],
                    threshold=row[4],
                    period_start=date.fromisoformat(row[5]),
                    quantity=data["current_usage"],
                    limit=data["limit"],
                    message=data["message"],
                    timestamp=datetime.fromisoformat(row[7])
                ))
            return events
        finally:
            conn.close()


def _row_to_usage(row) -> DailyUsage:
    return DailyUsage(
        tenant_id=row[0],
        metric=row[1],
        usage_date=date.fromisoformat(row[2]),
        quantity=row[3]
    )
