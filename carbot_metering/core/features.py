"""
Feature gating.

Boolean lookups against the resolved tier's feature flags. Anything that
cannot be positively confirmed, including unknown feature names, is denied.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .entitlements import EntitlementResolver
from .tiers import TierFeatures, TierId, next_tier

logger = logging.getLogger(__name__)


class UnknownFeatureError(ValueError):
    """Raised for a feature name no tier defines."""


@dataclass(frozen=True)
class FeatureCheckResult:
    """Outcome of a feature check."""
    allowed: bool
    feature: str
    package: Optional[TierId] = None
    reason: Optional[str] = None
    code: Optional[str] = None
    upgrade_suggestion: Optional[TierId] = None

    @property
    def upgrade_required(self) -> bool:
        return not self.allowed and self.upgrade_suggestion is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "feature": self.feature,
            "package": self.package.value if self.package else None,
            "reason": self.reason,
            "upgrade_required": self.upgrade_required,
            "upgrade_suggestion": (
                self.upgrade_suggestion.value if self.upgrade_suggestion else None
            ),
        }


def feature_field(name: str) -> str:
    """Normalize a feature name to its TierFeatures field.

    Accepts snake_case ("api_access") and camelCase ("apiAccess").

    Raises:
        UnknownFeatureError: If no such feature exists
    """
    field = re.sub(r"(?<!^)(?=[A-Z])", "_", str(name).strip()).lower()
    if field not in TierFeatures.names():
        raise UnknownFeatureError(f"Unknown feature: {name}")
    return field


class FeatureGate:
    """Answers "does this tenant's tier grant feature X?"."""

    def __init__(self, resolver: EntitlementResolver):
        self.resolver = resolver

    def check_feature(self, tenant_id: str, feature_name: str) -> FeatureCheckResult:
        try:
            field = feature_field(feature_name)
        except UnknownFeatureError as e:
            logger.warning("Feature check for tenant %s denied: %s", tenant_id, e)
            return FeatureCheckResult(
                allowed=False,
                feature=feature_name,
                reason=str(e),
                code="unknown_feature"
            )

        snapshot = self.resolver.resolve(tenant_id)
        if snapshot is None:
            return FeatureCheckResult(
                allowed=False,
                feature=feature_name,
                reason="Unable to determine package information",
                code="package_unavailable"
            )

        tier = snapshot.tier
        if getattr(tier.features, field):
            return FeatureCheckResult(allowed=True, feature=feature_name, package=tier.id)

        return FeatureCheckResult(
            allowed=False,
            feature=feature_name,
            package=tier.id,
            reason=f"{feature_name} is not included in the {tier.name} package",
            code="feature_not_included",
            upgrade_suggestion=next_tier(tier.id)
        )
