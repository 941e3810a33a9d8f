"""
Unit tests for entitlement resolution.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import date, datetime
from unittest.mock import Mock

from carbot_metering.core.entitlements import (
    EntitlementResolver,
    calendar_month,
    current_period,
)
from carbot_metering.core.metrics import Metric
from carbot_metering.core.tiers import TierId
from carbot_metering.storage.db import get_connection
from carbot_metering.storage.models import BillingPeriod, Subscription, SubscriptionStatus
from carbot_metering.storage.repository import (
    SubscriptionStore,
    UsageCounterStore,
    initialize_schema,
)

FIXED_NOW = datetime(2024, 3, 15, 10, 0, 0)
MARCH = BillingPeriod(start=date(2024, 3, 1), end=date(2024, 4, 1))


class TestPeriods:
    """Test billing period helpers."""

    def test_calendar_month(self):
        assert calendar_month(date(2024, 3, 15)) == MARCH

    def test_calendar_month_december(self):
        period = calendar_month(date(2024, 12, 31))
        assert period.start == date(2024, 12, 1)
        assert period.end == date(2025, 1, 1)

    def test_current_period_unchanged_when_contained(self):
        assert current_period(MARCH, date(2024, 3, 31)) is MARCH

    def test_current_period_rolls_forward(self):
        stale = BillingPeriod(start=date(2024, 1, 1), end=date(2024, 1, 31))
        rolled = current_period(stale, date(2024, 3, 15))
        assert rolled.contains(date(2024, 3, 15))
        assert rolled.length_days == 30


class TestEntitlementResolver:
    """Test tier snapshot resolution."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.subscriptions = SubscriptionStore(self.db_path)
        self.usage = UsageCounterStore(self.db_path)
        self.resolver = EntitlementResolver(
            self.subscriptions, self.usage, clock=lambda: FIXED_NOW
        )

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _subscribe(self, tenant_id, tier_id, status=SubscriptionStatus.ACTIVE):
        self.subscriptions.upsert(Subscription(tenant_id, tier_id, status, MARCH))

    def test_active_subscription(self):
        """Test usage is summed over the subscription's period only."""
        self._subscribe("w1", "professional")
        self.usage.upsert_add("w1", "leads", date(2024, 3, 2), 4, MARCH)
        self.usage.upsert_add("w1", "leads", date(2024, 3, 14), 6, MARCH)
        self.usage.upsert_add("w1", "leads", date(2024, 2, 28), 100, MARCH)

        snapshot = self.resolver.resolve("w1")

        assert snapshot.tier.id == TierId.PROFESSIONAL
        assert snapshot.billing_period == MARCH
        assert snapshot.usage_of(Metric.LEADS) == 10
        assert snapshot.usage_of(Metric.API_CALLS) == 0
        assert not snapshot.fallback

    def test_no_subscription_falls_back_to_basic(self):
        snapshot = self.resolver.resolve("unknown-workshop")

        assert snapshot.tier.id == TierId.BASIC
        assert snapshot.subscription is None
        assert snapshot.billing_period == MARCH
        assert snapshot.fallback

    def test_inactive_subscription_falls_back_to_basic(self):
        self._subscribe("w1", "enterprise", SubscriptionStatus.PAST_DUE)

        snapshot = self.resolver.resolve("w1")

        assert snapshot.tier.id == TierId.BASIC
        assert snapshot.fallback

    def test_unknown_tier_falls_back_to_lowest(self):
        self._subscribe("w1", "platinum")

        snapshot = self.resolver.resolve("w1")

        assert snapshot.tier.id == TierId.BASIC
        assert snapshot.fallback

    def test_storage_error_returns_none(self):
        subscriptions = Mock()
        subscriptions.get.side_effect = sqlite3.OperationalError("database is locked")
        resolver = EntitlementResolver(subscriptions, self.usage, clock=lambda: FIXED_NOW)

        assert resolver.resolve("w1") is None

    def test_unknown_metric_rows_are_ignored(self):
        self._subscribe("w1", "basic")
        self.usage.upsert_add("w1", "legacy_metric", date(2024, 3, 5), 3, MARCH)

        snapshot = self.resolver.resolve("w1")

        assert set(snapshot.current_usage) == set(Metric)

    def test_to_dict(self):
        self._subscribe("w1", "basic")
        data = self.resolver.resolve("w1").to_dict()

        assert data["package"] == "basic"
        assert data["billing_period"] == {"start": "2024-03-01", "end": "2024-04-01"}
        assert data["current_usage"]["leads"] == 0

    def _insert_raw_subscription(self, tenant_id, status, start, end):
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO subscriptions
                (tenant_id, tier_id, status, current_period_start,
                 current_period_end, updated_at)
                VALUES (?, 'professional', ?, ?, ?, '2024-03-01T00:00:00')
            """, (tenant_id, status, start, end))
            conn.commit()
        finally:
            conn.close()

    def test_corrupt_status_returns_none(self):
        self._insert_raw_subscription("w1", "frozen", "2024-03-01", "2024-04-01")

        assert self.resolver.resolve("w1") is None

    def test_corrupt_period_returns_none(self):
        self._insert_raw_subscription("w1", "active", "2024-04-01", "2024-03-01")

        assert self.resolver.resolve("w1") is None

    def test_unparseable_date_returns_none(self):
        self._insert_raw_subscription("w1", "active", "first of march", "2024-04-01")

        assert self.resolver.resolve("w1") is None
