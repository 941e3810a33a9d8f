"""
Metered resource types.

Maps request actions ("lead", "api_call", ...) onto the counters and tier
limits they consume.
"""

from enum import Enum

from .tiers import Tier


class UnknownMetricError(ValueError):
    """Raised for an action or metric name that is not metered."""


class Metric(Enum):
    """Countable resources tracked per tenant per day."""
    LEADS = "leads"
    API_CALLS = "api_calls"
    STORAGE_GB = "storage_gb"
    SEATS = "seats"
    INTEGRATIONS = "integrations"

    @property
    def limit_field(self) -> str:
        """Name of the TierLimits attribute bounding this metric."""
        return _LIMIT_FIELDS[self]

    def limit_for(self, tier: Tier) -> int:
        return getattr(tier.limits, self.limit_field)


_LIMIT_FIELDS = {
    Metric.LEADS: "monthly_leads",
    Metric.API_CALLS: "api_calls",
    Metric.STORAGE_GB: "storage_gb",
    Metric.SEATS: "seats",
    Metric.INTEGRATIONS: "integrations",
}

_ACTIONS = {
    "lead": Metric.LEADS,
    "api_call": Metric.API_CALLS,
    "storage": Metric.STORAGE_GB,
    "seat": Metric.SEATS,
    "user": Metric.SEATS,
    "integration": Metric.INTEGRATIONS,
}


def metric_for_action(action) -> Metric:
    """Resolve an action or metric name to its Metric.

    Accepts the singular action names ("lead", "api_call", ...), the metric
    names themselves ("leads", "api_calls", ...) and Metric members.

    Raises:
        UnknownMetricError: If nothing matches
    """
    if isinstance(action, Metric):
        return action
    key = str(action).strip().lower()
    if key in _ACTIONS:
        return _ACTIONS[key]
    try:
        return Metric(key)
    except ValueError:
        raise UnknownMetricError(f"Unknown metric: {action}")
