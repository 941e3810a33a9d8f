"""
Entitlement resolution.

Determines a workshop's active tier and its usage for the current billing
period. Resolution never blocks: tenants without an active subscription are
treated as Basic, and storage failures yield None instead of raising.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Optional

from .metrics import Metric
from .tiers import TIER_CATALOG, Tier, TierCatalog, UnknownTierError
from carbot_metering.storage.models import BillingPeriod, Subscription
from carbot_metering.storage.repository import SubscriptionStore, UsageCounterStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierSnapshot:
    """A tenant's tier merged with its usage for the current billing period."""
    tenant_id: str
    tier: Tier
    subscription: Optional[Subscription]
    current_usage: Dict[Metric, int]
    billing_period: BillingPeriod
    fallback: bool = False  # True when no active subscription was found

    def usage_of(self, metric: Metric) -> int:
        return self.current_usage.get(metric, 0)

    def to_dict(self) -> Dict:
        return {
            "tenant_id": self.tenant_id,
            "package": self.tier.id.value,
            "package_name": self.tier.name,
            "current_usage": {m.value: q for m, q in self.current_usage.items()},
            "billing_period": {
                "start": self.billing_period.start.isoformat(),
                "end": self.billing_period.end.isoformat(),
            },
            "fallback": self.fallback,
        }


def calendar_month(today: date) -> BillingPeriod:
    """Return the calendar month containing ``today`` as a billing period."""
    start = today.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return BillingPeriod(start=start, end=end)


def current_period(period: BillingPeriod, today: date) -> BillingPeriod:
    """Roll a stored period by whole lengths until it contains ``today``.

    Usage counters roll over implicitly: a stale period stored on the
    subscription still yields the period the tenant is billed in today.
    """
    if period.contains(today):
        return period
    return period.shifted((today - period.start).days // period.length_days)


class EntitlementResolver:
    """Resolves tenants to tier snapshots."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        usage: UsageCounterStore,
        catalog: TierCatalog = TIER_CATALOG,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.subscriptions = subscriptions
        self.usage = usage
        self.catalog = catalog
        self.clock = clock

    def resolve(self, tenant_id: str) -> Optional[TierSnapshot]:
        """Resolve the tenant's tier and current-period usage.

        Args:
            tenant_id: Workshop identifier

        Returns:
            TierSnapshot, or None if the stores could not be read or hold
            corrupt rows. Callers must treat None as "deny feature access"
            without failing the request.
        """
        today = self.clock().date()
        try:
            subscription = self.subscriptions.get(tenant_id)
            tier, period, fallback = self._tier_and_period(tenant_id, subscription, today)
            totals = self.usage.totals(tenant_id, period.start, period.end)
        except (sqlite3.Error, ValueError) as e:
            logger.error(
                "Could not resolve entitlements for tenant %s: %s", tenant_id, e
            )
            return None

        current_usage = {metric: 0 for metric in Metric}
        for name, quantity in totals.items():
            try:
                current_usage[Metric(name)] = quantity
            except ValueError:
                logger.warning("Ignoring usage for unknown metric %r (tenant %s)", name, tenant_id)

        return TierSnapshot(
            tenant_id=tenant_id,
            tier=tier,
            subscription=subscription,
            current_usage=current_usage,
            billing_period=period,
            fallback=fallback
        )

    def _tier_and_period(self, tenant_id, subscription, today):
        if subscription is None or not subscription.is_active:
            return self.catalog.lowest, calendar_month(today), True

        try:
            tier = self.catalog.get(subscription.tier_id)
        except UnknownTierError:
            logger.error(
                "Tenant %s has unknown tier %r, treating as %s",
                tenant_id, subscription.tier_id, self.catalog.lowest.id.value
            )
            return self.catalog.lowest, current_period(subscription.period, today), True

        return tier, current_period(subscription.period, today), False
