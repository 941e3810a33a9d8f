"""
Data models for storage layer.

Defines the subscription, usage counter and billing event records.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional


class SubscriptionStatus(Enum):
    """Lifecycle status of a workshop subscription."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PAST_DUE = "past_due"


@dataclass(frozen=True)
class BillingPeriod:
    """Half-open date range ``[start, end)`` over which monthly limits accumulate."""
    start: date
    end: date

    def __post_init__(self):
        """Validate the period is not empty."""
        if self.start >= self.end:
            raise ValueError("billing period start must be before end")

    @property
    def length_days(self) -> int:
        return (self.end - self.start).days

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end

    def shifted(self, periods: int) -> "BillingPeriod":
        """Return the period moved by a whole number of period lengths."""
        offset = timedelta(days=self.length_days * periods)
        return BillingPeriod(start=self.start + offset, end=self.end + offset)


@dataclass(frozen=True)
class Subscription:
    """A workshop's subscription to a tier.

    Exactly one row per tenant; plan changes overwrite it.
    """
    tenant_id: str
    tier_id: str
    status: SubscriptionStatus
    period: BillingPeriod

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


@dataclass(frozen=True)
class DailyUsage:
    """One per-tenant, per-metric, per-day usage counter."""
    tenant_id: str
    metric: str
    usage_date: date
    quantity: int


@dataclass(frozen=True)
class WarningEvent:
    """Append-only record of a usage threshold crossing."""
    tenant_id: str
    metric: str
    threshold: int  # percent of the limit, e.g. 80 or 95
    period_start: date
    quantity: int
    limit: int
    message: str
    timestamp: datetime
    event_type: str = "usage_warning"
    id: Optional[int] = None
