"""
Subscription tier catalog.

Fixed table of the Basic, Professional and Enterprise packages with their
resource limits, feature flags and per-tier request-rate policy. Tiers are
ordered, so "next tier up" is derived by comparison.
"""

from dataclasses import dataclass, fields, replace
from enum import Enum
from functools import total_ordering
from typing import Dict, Optional

# Sentinel for an unbounded limit
UNLIMITED = -1


class UnknownTierError(ValueError):
    """Raised for a tier id that is not in the catalog."""


@total_ordering
class TierId(Enum):
    """Subscription tiers, lowest first."""
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, TierId):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: str) -> "TierId":
        """Parse a tier id case-insensitively.

        Raises:
            UnknownTierError: If the value names no tier
        """
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnknownTierError(f"Unknown tier: {value}")


_TIER_ORDER = (TierId.BASIC, TierId.PROFESSIONAL, TierId.ENTERPRISE)


def next_tier(tier: TierId) -> Optional[TierId]:
    """Return the tier directly above ``tier``, or None for the top tier."""
    if tier.rank + 1 >= len(_TIER_ORDER):
        return None
    return _TIER_ORDER[tier.rank + 1]


def is_upgrade(current: TierId, target: TierId) -> bool:
    return target > current


class SupportLevel(Enum):
    EMAIL = "email"
    PHONE = "phone"
    DEDICATED = "dedicated"


@dataclass(frozen=True)
class TierLimits:
    """Monthly resource ceilings; ``UNLIMITED`` (-1) means unbounded."""
    monthly_leads: int
    seats: int
    api_calls: int
    storage_gb: int
    integrations: int

    def __post_init__(self):
        """Validate every limit is non-negative or the unlimited sentinel."""
        for f in fields(self):
            value = getattr(self, f.name)
            if value < 0 and value != UNLIMITED:
                raise ValueError(f"{f.name} must be >= 0 or {UNLIMITED}")


@dataclass(frozen=True)
class TierFeatures:
    """Boolean feature flags granted by a tier."""
    email_support: bool = False
    phone_support: bool = False
    basic_dashboard: bool = False
    advanced_analytics: bool = False
    api_access: bool = False
    custom_integrations: bool = False
    personal_support: bool = False
    white_label: bool = False

    @classmethod
    def names(cls):
        return [f.name for f in fields(cls)]


@dataclass(frozen=True)
class RatePolicy:
    """Request-rate and concurrency ceilings, independent of monthly limits."""
    api_calls_per_minute: int
    leads_per_hour: int
    concurrent_requests: int

    def __post_init__(self):
        """Validate window limits and the concurrency ceiling."""
        for name in ("api_calls_per_minute", "leads_per_hour"):
            value = getattr(self, name)
            if value < 0 and value != UNLIMITED:
                raise ValueError(f"{name} must be >= 0 or {UNLIMITED}")
        if self.concurrent_requests < 1:
            raise ValueError("concurrent_requests must be >= 1")


@dataclass(frozen=True)
class Tier:
    """A subscription package."""
    id: TierId
    name: str
    price_minor_units: Optional[int]  # EUR cents per month; None = individual pricing
    limits: TierLimits
    features: TierFeatures
    support_level: SupportLevel
    rate_policy: RatePolicy


@dataclass(frozen=True)
class TierCatalog:
    """Compiled-in table of subscription tiers."""
    tiers: Dict[TierId, Tier]

    def get(self, tier_id) -> Tier:
        """Get a tier by id.

        Args:
            tier_id: TierId or its string value

        Returns:
            The matching Tier

        Raises:
            UnknownTierError: If the tier is not in the catalog
        """
        if not isinstance(tier_id, TierId):
            tier_id = TierId.parse(tier_id)
        if tier_id not in self.tiers:
            raise UnknownTierError(f"Unknown tier: {tier_id.value}")
        return self.tiers[tier_id]

    @property
    def lowest(self) -> Tier:
        return self.tiers[min(self.tiers)]

    def with_rate_policies(self, policies: Dict[TierId, RatePolicy]) -> "TierCatalog":
        """Return a copy of the catalog with the given rate policies swapped in."""
        tiers = dict(self.tiers)
        for tier_id, policy in policies.items():
            tiers[tier_id] = replace(self.get(tier_id), rate_policy=policy)
        return TierCatalog(tiers)


TIER_CATALOG = TierCatalog({
    TierId.BASIC: Tier(
        id=TierId.BASIC,
        name="Basic",
        price_minor_units=2900,
        limits=TierLimits(
            monthly_leads=100,
            seats=1,
            api_calls=0,
            storage_gb=1,
            integrations=1
        ),
        features=TierFeatures(
            email_support=True,
            basic_dashboard=True
        ),
        support_level=SupportLevel.EMAIL,
        rate_policy=RatePolicy(
            api_calls_per_minute=60,
            leads_per_hour=10,
            concurrent_requests=5
        )
    ),
    TierId.PROFESSIONAL: Tier(
        id=TierId.PROFESSIONAL,
        name="Professional",
        price_minor_units=7900,
        limits=TierLimits(
            monthly_leads=UNLIMITED,
            seats=5,
            api_calls=10000,
            storage_gb=10,
            integrations=10
        ),
        features=TierFeatures(
            email_support=True,
            phone_support=True,
            basic_dashboard=True,
            advanced_analytics=True,
            api_access=True
        ),
        support_level=SupportLevel.PHONE,
        rate_policy=RatePolicy(
            api_calls_per_minute=300,
            leads_per_hour=50,
            concurrent_requests=20
        )
    ),
    TierId.ENTERPRISE: Tier(
        id=TierId.ENTERPRISE,
        name="Enterprise Individual",
        price_minor_units=None,
        limits=TierLimits(
            monthly_leads=UNLIMITED,
            seats=UNLIMITED,
            api_calls=UNLIMITED,
            storage_gb=UNLIMITED,
            integrations=UNLIMITED
        ),
        features=TierFeatures(
            email_support=True,
            phone_support=True,
            basic_dashboard=True,
            advanced_analytics=True,
            api_access=True,
            custom_integrations=True,
            personal_support=True,
            white_label=True
        ),
        support_level=SupportLevel.DEDICATED,
        rate_policy=RatePolicy(
            api_calls_per_minute=1000,
            leads_per_hour=UNLIMITED,
            concurrent_requests=100
        )
    ),
})


def tier_comparison(catalog: TierCatalog = TIER_CATALOG) -> Dict[str, Dict[str, str]]:
    """German side-by-side comparison shown in upgrade prompts."""
    def _leads(tier: Tier) -> str:
        leads = tier.limits.monthly_leads
        return "Unbegrenzt" if leads == UNLIMITED else str(leads)

    basic = catalog.get(TierId.BASIC)
    professional = catalog.get(TierId.PROFESSIONAL)
    enterprise = catalog.get(TierId.ENTERPRISE)
    return {
        "monthly_leads": {
            "basic": _leads(basic),
            "professional": _leads(professional),
            "enterprise": _leads(enterprise),
        },
        "support": {
            "basic": "E-Mail Support",
            "professional": "Telefon Support",
            "enterprise": "Persönlicher Support",
        },
        "analytics": {
            "basic": "Basis-Dashboard",
            "professional": "Erweiterte Analysen",
            "enterprise": "Erweiterte Analysen + Custom Reports",
        },
        "api": {
            "basic": "Kein API-Zugang",
            "professional": "API-Zugang",
            "enterprise": "API-Zugang + Custom Integrationen",
        },
    }
