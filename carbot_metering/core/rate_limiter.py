"""Thread-safe sliding-window rate limiter keyed by tenant and tier.

Bounds the request rate per tenant per window type (API calls per minute,
leads per hour), independent of the monthly limits. State is process-local
and advisory: it is lost on restart, which degrades to "allow". In a
multi-process deployment each process enforces its own window, so the
effective ceiling is per process.
"""

import logging
import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

from .metrics import Metric, metric_for_action
from .tiers import TIER_CATALOG, UNLIMITED, RatePolicy, TierCatalog, TierId

logger = logging.getLogger(__name__)

# Seconds between sweeps of idle keys triggered from the request path
CLEANUP_INTERVAL_SECONDS = 300


class WindowType(Enum):
    """Rate windows and their durations."""
    API_CALLS_PER_MINUTE = "api_calls_per_minute"
    LEADS_PER_HOUR = "leads_per_hour"

    @property
    def seconds(self) -> int:
        return 3600 if self is WindowType.LEADS_PER_HOUR else 60

    def limit_for(self, policy: RatePolicy) -> int:
        return getattr(policy, self.value)


def window_for(metric: Metric) -> WindowType:
    """Leads are throttled per hour; every other metric per minute."""
    if metric == Metric.LEADS:
        return WindowType.LEADS_PER_HOUR
    return WindowType.API_CALLS_PER_MINUTE


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate check."""
    allowed: bool
    window_type: WindowType
    limit: int
    remaining: Optional[int] = None
    reset_at: Optional[int] = None  # epoch seconds
    retry_after_seconds: Optional[int] = None
    unlimited: bool = False

    def headers(self) -> Dict[str, str]:
        """X-RateLimit-* response headers (plus Retry-After when denied)."""
        if self.unlimited:
            return {}
        headers = {
            "X-RateLimit-Type": self.window_type.value,
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """
    Sliding-window rate limiter.

    Keeps the timestamps of admitted requests per (tenant, window type).
    Expired timestamps are pruned lazily on each check; a request is
    admitted iff fewer than ``limit`` timestamps remain in the window.

    Example:
        >>> limiter = RateLimiter()
        >>> decision = limiter.check("workshop-1", Metric.API_CALLS, TierId.BASIC)
        >>> if not decision.allowed:
        ...     print(f"Rate limited. Try again in {decision.retry_after_seconds}s")
    """

    def __init__(
        self,
        catalog: TierCatalog = TIER_CATALOG,
        clock: Callable[[], float] = time.time,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS
    ):
        self.catalog = catalog
        self.clock = clock
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._last_cleanup = clock()
        self.requests: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, tenant_id: str, metric, tier_id: TierId) -> RateLimitDecision:
        """
        Check and, if allowed, count a request.

        Args:
            tenant_id: Workshop identifier
            metric: Metric or action name of the request
            tier_id: Tier whose rate policy applies

        Returns:
            RateLimitDecision
        """
        window = window_for(metric_for_action(metric))
        limit = window.limit_for(self.catalog.get(tier_id).rate_policy)

        if limit == UNLIMITED:
            return RateLimitDecision(
                allowed=True,
                window_type=window,
                limit=UNLIMITED,
                unlimited=True
            )

        key = (tenant_id, window.value)
        with self._lock:
            now = self.clock()
            timestamps = self.requests[key]

            # Remove requests that slid out of the window
            while timestamps and now - timestamps[0] >= window.seconds:
                timestamps.popleft()

            if len(timestamps) >= limit:
                oldest = timestamps[0] if timestamps else now
                reset_at = oldest + window.seconds
                logger.warning(
                    "Rate limit %s (%s) exceeded for tenant %s",
                    window.value, limit, tenant_id
                )
                return RateLimitDecision(
                    allowed=False,
                    window_type=window,
                    limit=limit,
                    remaining=0,
                    reset_at=math.ceil(reset_at),
                    retry_after_seconds=max(1, math.ceil(reset_at - now))
                )

            timestamps.append(now)
            return RateLimitDecision(
                allowed=True,
                window_type=window,
                limit=limit,
                remaining=limit - len(timestamps),
                reset_at=math.ceil(now + window.seconds)
            )

    def cleanup(self) -> int:
        """
        Remove keys with no request left in their window.

        Returns:
            Number of keys cleaned up
        """
        with self._lock:
            now = self.clock()
            stale = [
                key for key, timestamps in self.requests.items()
                if not timestamps or now - timestamps[-1] >= WindowType(key[1]).seconds
            ]
            for key in stale:
                del self.requests[key]

            if stale:
                logger.debug(f"Cleaned up {len(stale)} stale rate limit entries")

            return len(stale)

    def cleanup_if_due(self) -> int:
        """Run ``cleanup()`` if the last sweep is older than the cleanup interval."""
        with self._lock:
            now = self.clock()
            if now - self._last_cleanup < self.cleanup_interval_seconds:
                return 0
            self._last_cleanup = now
        return self.cleanup()

    def reset(self) -> None:
        with self._lock:
            self.requests.clear()
