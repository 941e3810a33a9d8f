"""
Metered request gate.

Runs an inbound metered request through the engine in a fixed order and
guarantees the concurrency slot is released on every exit path.

Enforcement Order:
1. Concurrency cap - bounds in-flight requests per tenant (429)
2. Rate limit - bounds request bursts per window (429)
3. Monthly limit - only for pre-checked actions such as lead creation (402)

After the protected block finishes, successfully or not, usage is recorded
(which also evaluates warning thresholds) and the slot is released.
Rejections in steps 1-3 never reach the protected block and record nothing.
"""

import logging
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Iterator, Optional, Tuple

from .concurrency import ConcurrencyCapper, SlotAdmission
from .entitlements import EntitlementResolver, TierSnapshot
from .limits import (
    CODE_PACKAGE_UNAVAILABLE,
    LimitChecker,
    LimitCheckResult,
    evaluate_limit,
)
from .metrics import Metric, UnknownMetricError, metric_for_action
from .pricing import generate_upgrade_url
from .rate_limiter import RateLimitDecision, RateLimiter
from .tiers import TierId
from .usage import UsageRecorder

logger = logging.getLogger(__name__)

# Retry-After sent when the concurrency cap rejects a request
CONCURRENCY_RETRY_AFTER_SECONDS = 60


class RequestStage(Enum):
    """Progress of a metered request, in order."""
    ADMITTED = auto()   # Concurrency slot taken
    RATE_OK = auto()    # Within the rate window
    LIMIT_OK = auto()   # Monthly limit pre-check passed
    PROCESSED = auto()  # Protected block completed without raising
    RECORDED = auto()   # Usage recorded, thresholds evaluated
    RELEASED = auto()   # Concurrency slot returned


class MeteringRejection(Exception):
    """Raised when a metered request is rejected before processing.

    Carries everything needed to build the HTTP response; no storage
    error detail is ever placed in the body.
    """
    def __init__(
        self,
        message: str,
        status: int,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.status = status
        self.headers = headers or {}
        self.body = body or {"error": message}

    def to_response(self) -> Tuple[int, Dict[str, str], Dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.headers)
        return self.status, headers, self.body


@dataclass(frozen=True)
class MeteredRoute:
    """Metering configuration for an API route."""
    methods: Tuple[str, ...]
    metric: Metric
    pre_check: bool
    description: str


METERED_ROUTES: Dict[str, MeteredRoute] = {
    "/api/leads": MeteredRoute(("POST",), Metric.LEADS, True, "Lead creation"),
    "/api/chat": MeteredRoute(("POST",), Metric.API_CALLS, False, "Chat API call"),
    "/api/analytics": MeteredRoute(("GET", "POST"), Metric.API_CALLS, False, "Analytics API call"),
    "/api/keys": MeteredRoute(("GET", "POST", "DELETE"), Metric.API_CALLS, False, "API key management"),
}


def find_route(path: str) -> Optional[MeteredRoute]:
    """Exact match first, then the first route ``path`` starts with."""
    if path in METERED_ROUTES:
        return METERED_ROUTES[path]
    for prefix, route in METERED_ROUTES.items():
        if path.startswith(prefix + "/"):
            return route
    return None


@dataclass
class MeteredRequest:
    """Handle yielded to the protected block."""
    tenant_id: str
    metric: Metric
    quantity: int
    snapshot: Optional[TierSnapshot]
    admission: SlotAdmission
    stage: RequestStage = RequestStage.ADMITTED
    rate: Optional[RateLimitDecision] = None
    limit_check: Optional[LimitCheckResult] = None
    recorded: Optional[bool] = None

    def usage_headers(self) -> Dict[str, str]:
        headers = {
            "X-Usage-Metric": self.metric.value,
            "X-Usage-Tracked": "true" if self.recorded else "false",
        }
        if self.rate is not None:
            headers.update(self.rate.headers())
        return headers


class MeteringGate:
    """Composes the capper, rate limiter, limit checker and recorder."""

    def __init__(
        self,
        resolver: EntitlementResolver,
        limit_checker: LimitChecker,
        rate_limiter: RateLimiter,
        capper: ConcurrencyCapper,
        recorder: UsageRecorder,
        upgrade_base_url: Optional[str] = None
    ):
        self.resolver = resolver
        self.limit_checker = limit_checker
        self.rate_limiter = rate_limiter
        self.capper = capper
        self.recorder = recorder
        self.upgrade_base_url = upgrade_base_url

    @contextmanager
    def metered(
        self,
        tenant_id: str,
        metric,
        pre_check: bool = False,
        quantity: int = 1
    ) -> Iterator[MeteredRequest]:
        """Run the enclosed block as a metered request.

        Args:
            tenant_id: Workshop identifier
            metric: Metric or action name consumed by the request
            pre_check: Check the monthly limit before processing
            quantity: Quantity consumed, must be > 0

        Yields:
            MeteredRequest describing the admitted request

        Raises:
            MeteringRejection: If the request is rejected before processing
        """
        metric = self._parse_metric(metric)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise MeteringRejection(
                "quantity must be a positive integer",
                status=400,
                body={"error": "quantity must be a positive integer", "code": "invalid_quantity"}
            )

        snapshot = self.resolver.resolve(tenant_id)
        tier_id = snapshot.tier.id if snapshot is not None else TierId.BASIC

        admission = self.capper.acquire(tenant_id, tier_id)
        if not admission.allowed:
            raise self._concurrency_rejection(admission)

        request = MeteredRequest(
            tenant_id=tenant_id,
            metric=metric,
            quantity=quantity,
            snapshot=snapshot,
            admission=admission
        )
        try:
            self.rate_limiter.cleanup_if_due()
            request.rate = self.rate_limiter.check(tenant_id, metric, tier_id)
            if not request.rate.allowed:
                raise self._rate_rejection(request.rate)
            request.stage = RequestStage.RATE_OK

            if pre_check:
                if snapshot is None:
                    request.limit_check = self.limit_checker.unavailable(tenant_id, metric, quantity)
                else:
                    request.limit_check = evaluate_limit(snapshot, metric, quantity)
                if not request.limit_check.allowed:
                    raise self._limit_rejection(tenant_id, snapshot, request.limit_check)
                request.stage = RequestStage.LIMIT_OK

            try:
                yield request
                request.stage = RequestStage.PROCESSED
            finally:
                request.recorded = self.recorder.record(tenant_id, metric, quantity)
                request.stage = RequestStage.RECORDED
        finally:
            self.capper.release(tenant_id)
            request.stage = RequestStage.RELEASED

    def for_request(self, tenant_id: str, path: str, method: str):
        """Context manager metering ``method path`` if it is a metered route.

        Untracked routes get a no-op context yielding None.
        """
        route = find_route(path)
        if route is None or method.upper() not in route.methods:
            return nullcontext()
        return self.metered(tenant_id, route.metric, pre_check=route.pre_check)

    def _parse_metric(self, metric) -> Metric:
        try:
            return metric_for_action(metric)
        except UnknownMetricError as e:
            raise MeteringRejection(
                str(e),
                status=400,
                body={"error": str(e), "code": "unknown_metric"}
            )

    def _concurrency_rejection(self, admission: SlotAdmission) -> MeteringRejection:
        message = "Concurrent request limit exceeded"
        return MeteringRejection(
            message,
            status=429,
            headers={
                "Retry-After": str(CONCURRENCY_RETRY_AFTER_SECONDS),
                "X-RateLimit-Type": "concurrent",
                "X-RateLimit-Limit": str(admission.limit),
            },
            body={
                "error": message,
                "code": "concurrency_limit",
                "retry_after": CONCURRENCY_RETRY_AFTER_SECONDS,
            }
        )

    def _rate_rejection(self, decision: RateLimitDecision) -> MeteringRejection:
        message = "Rate limit exceeded"
        return MeteringRejection(
            message,
            status=429,
            headers=decision.headers(),
            body={
                "error": message,
                "code": "rate_limit",
                "limit": decision.limit,
                "remaining": decision.remaining,
                "reset": decision.reset_at,
                "retry_after": decision.retry_after_seconds,
            }
        )

    def _limit_rejection(
        self,
        tenant_id: str,
        snapshot: Optional[TierSnapshot],
        result: LimitCheckResult
    ) -> MeteringRejection:
        if result.code == CODE_PACKAGE_UNAVAILABLE:
            message = "Usage limits are temporarily unavailable"
            return MeteringRejection(
                message,
                status=503,
                headers={"Retry-After": str(CONCURRENCY_RETRY_AFTER_SECONDS)},
                body={"error": message, "code": result.code}
            )

        suggested = result.upgrade_suggestion.value if result.upgrade_suggestion else None
        body = {
            "error": result.reason,
            "code": result.code,
            "upgrade_required": result.upgrade_required,
            "current_package": snapshot.tier.id.value,
            "suggested_package": suggested,
            "current_usage": result.current_usage,
            "limit": result.limit,
        }
        if suggested and self.upgrade_base_url:
            body["upgrade_url"] = generate_upgrade_url(
                tenant_id, result.upgrade_suggestion, self.upgrade_base_url
            )
        return MeteringRejection(
            result.reason,
            status=402,
            headers={
                "X-Package-Limit-Exceeded": "true",
                "X-Current-Package": snapshot.tier.name,
                "X-Upgrade-Required": "true" if result.upgrade_required else "false",
                "X-Suggested-Package": suggested or "",
            },
            body=body
        )
