"""
Monthly limit checking.

Decides whether a tenant may consume a quantity of a metered resource by
comparing current-period usage plus the requested quantity against the
tier's limit.

Check order:
1. Metric and quantity validation - configuration errors are always denied
2. Entitlement resolution - storage failures follow the configured policy
3. Limit comparison - unlimited tiers bypass the comparison entirely
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .entitlements import EntitlementResolver, TierSnapshot
from .metrics import Metric, UnknownMetricError, metric_for_action
from .tiers import UNLIMITED, TierId, next_tier

logger = logging.getLogger(__name__)


class FailurePolicy(Enum):
    """What the limit check decides when usage cannot be determined."""
    OPEN = "open"      # Allow and flag the result as degraded
    CLOSED = "closed"  # Deny until usage can be read again


# Machine-readable denial codes
CODE_LIMIT_EXCEEDED = "limit_exceeded"
CODE_INVALID_QUANTITY = "invalid_quantity"
CODE_UNKNOWN_METRIC = "unknown_metric"
CODE_PACKAGE_UNAVAILABLE = "package_unavailable"

PACKAGE_UNAVAILABLE_REASON = "Unable to determine package information"


@dataclass(frozen=True)
class LimitCheckResult:
    """Outcome of a limit check."""
    allowed: bool
    metric: Optional[Metric] = None
    requested: int = 1
    current_usage: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    unlimited: bool = False
    package: Optional[TierId] = None
    reason: Optional[str] = None
    code: Optional[str] = None
    upgrade_suggestion: Optional[TierId] = None
    degraded: bool = False

    @property
    def upgrade_required(self) -> bool:
        return not self.allowed and self.upgrade_suggestion is not None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-shaped response body."""
        result: Dict[str, Any] = {
            "allowed": self.allowed,
            "requested": self.requested,
        }
        if self.metric is not None:
            result["metric"] = self.metric.value
        if self.package is not None:
            result["package"] = self.package.value
        if self.unlimited:
            result["unlimited"] = True
        if self.current_usage is not None:
            result["current_usage"] = self.current_usage
        if self.limit is not None:
            result["limit"] = self.limit
        if self.remaining is not None:
            result["remaining"] = self.remaining
        if self.reason:
            result["reason"] = self.reason
        if self.code:
            result["code"] = self.code
        if not self.allowed:
            result["upgrade_required"] = self.upgrade_required
            result["upgrade_suggestion"] = (
                self.upgrade_suggestion.value if self.upgrade_suggestion else None
            )
        if self.degraded:
            result["degraded"] = True
        return result


def evaluate_limit(snapshot: TierSnapshot, metric: Metric, quantity: int = 1) -> LimitCheckResult:
    """Compare a snapshot's usage plus ``quantity`` against its tier limit.

    Pure function; ``quantity`` is assumed already validated as positive.
    """
    tier = snapshot.tier
    limit = metric.limit_for(tier)

    if limit == UNLIMITED:
        return LimitCheckResult(
            allowed=True,
            metric=metric,
            requested=quantity,
            current_usage=snapshot.usage_of(metric),
            unlimited=True,
            package=tier.id
        )

    current = snapshot.usage_of(metric)
    new_total = current + quantity

    if new_total > limit:
        return LimitCheckResult(
            allowed=False,
            metric=metric,
            requested=quantity,
            current_usage=current,
            limit=limit,
            package=tier.id,
            reason=f"{metric.value} limit exceeded",
            code=CODE_LIMIT_EXCEEDED,
            upgrade_suggestion=next_tier(tier.id)
        )

    return LimitCheckResult(
        allowed=True,
        metric=metric,
        requested=quantity,
        current_usage=current,
        limit=limit,
        remaining=limit - new_total,
        package=tier.id
    )


class LimitChecker:
    """Checks requested quantities against a tenant's monthly limits."""

    def __init__(
        self,
        resolver: EntitlementResolver,
        on_storage_error: FailurePolicy = FailurePolicy.CLOSED
    ):
        self.resolver = resolver
        self.on_storage_error = on_storage_error

    def check_limit(self, tenant_id: str, action, quantity: int = 1) -> LimitCheckResult:
        """Decide whether ``tenant_id`` may consume ``quantity`` of ``action``.

        Args:
            tenant_id: Workshop identifier
            action: Action or metric name ("lead", "api_call", "leads", ...)
            quantity: Requested quantity, must be > 0

        Returns:
            LimitCheckResult; never raises for unknown actions or bad input
        """
        try:
            metric = metric_for_action(action)
        except UnknownMetricError as e:
            logger.warning("Limit check for tenant %s denied: %s", tenant_id, e)
            return LimitCheckResult(
                allowed=False,
                requested=quantity,
                reason=str(e),
                code=CODE_UNKNOWN_METRIC
            )

        invalid = _validate_quantity(tenant_id, metric, quantity)
        if invalid is not None:
            return invalid

        snapshot = self.resolver.resolve(tenant_id)
        if snapshot is None:
            return self.unavailable(tenant_id, metric, quantity)

        result = evaluate_limit(snapshot, metric, quantity)
        if not result.allowed:
            logger.info(
                "Tenant %s at %s/%s %s, requested %s",
                tenant_id, result.current_usage, result.limit, metric.value, quantity
            )
        return result

    def unavailable(self, tenant_id: str, metric: Metric, quantity: int) -> LimitCheckResult:
        """Result for a tenant whose usage could not be determined."""
        if self.on_storage_error == FailurePolicy.OPEN:
            logger.error(
                "Allowing %s x%s for tenant %s without a limit check (storage unavailable)",
                metric.value, quantity, tenant_id
            )
            return LimitCheckResult(
                allowed=True,
                metric=metric,
                requested=quantity,
                reason=PACKAGE_UNAVAILABLE_REASON,
                degraded=True
            )

        logger.error(
            "Denying %s x%s for tenant %s (storage unavailable)",
            metric.value, quantity, tenant_id
        )
        return LimitCheckResult(
            allowed=False,
            metric=metric,
            requested=quantity,
            reason=PACKAGE_UNAVAILABLE_REASON,
            code=CODE_PACKAGE_UNAVAILABLE
        )


def _validate_quantity(tenant_id: str, metric: Metric, quantity) -> Optional[LimitCheckResult]:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        logger.error(
            "Rejected non-positive quantity %r for %s (tenant %s)",
            quantity, metric.value, tenant_id
        )
        return LimitCheckResult(
            allowed=False,
            metric=metric,
            requested=quantity,
            reason="quantity must be a positive integer",
            code=CODE_INVALID_QUANTITY
        )
    return None
