"""
Usage warning thresholds.

After usage is recorded, checks whether the tenant has crossed 80% or 95%
of a limit and appends a warning event. The highest threshold already
warned is tracked per (tenant, metric, billing period), so each threshold
fires at most once per period no matter how many calls follow.
"""

import logging
import threading
from datetime import date, datetime
from typing import Callable, Dict, Optional, Sequence, Tuple

from .entitlements import EntitlementResolver
from .metrics import metric_for_action
from .tiers import UNLIMITED
from carbot_metering.storage.models import WarningEvent
from carbot_metering.storage.repository import EventSink

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = (80, 95)

_MESSAGES = {
    80: "Sie haben 80% Ihres {metric}-Limits erreicht ({usage}/{limit})",
    95: "Achtung: Sie haben 95% Ihres {metric}-Limits erreicht ({usage}/{limit})",
    100: "Ihr {metric}-Limit wurde erreicht ({usage}/{limit})",
}
_GENERIC_MESSAGE = "Sie haben {threshold}% Ihres {metric}-Limits erreicht ({usage}/{limit})"


def warning_message(metric: str, threshold: int, usage: int, limit: int) -> str:
    """Human-readable (German) warning text."""
    template = _MESSAGES.get(threshold, _GENERIC_MESSAGE)
    return template.format(metric=metric, threshold=threshold, usage=usage, limit=limit)


def validate_thresholds(thresholds: Sequence[int]) -> Tuple[int, ...]:
    """Return thresholds as a tuple after checking they are sane.

    Raises:
        ValueError: If empty, out of (0, 100] or not strictly increasing
    """
    values = tuple(thresholds)
    if not values:
        raise ValueError("at least one warning threshold is required")
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int) or not 0 < value <= 100:
            raise ValueError(f"warning threshold {value!r} must be an integer in (0, 100]")
    if list(values) != sorted(set(values)):
        raise ValueError("warning thresholds must be strictly increasing")
    return values


class WarningEmitter:
    """Emits one warning event per threshold crossing per billing period."""

    def __init__(
        self,
        resolver: EntitlementResolver,
        sink: EventSink,
        thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.resolver = resolver
        self.sink = sink
        self.thresholds = validate_thresholds(thresholds)
        self.clock = clock
        self._warned: Dict[Tuple[str, str, date], int] = {}
        self._lock = threading.Lock()

    def evaluate(self, tenant_id: str, metric) -> Optional[WarningEvent]:
        """Check thresholds for ``metric`` and emit a warning if one was crossed.

        Never raises; failures are logged and the call returns None.

        Returns:
            The emitted WarningEvent, or None if nothing was emitted
        """
        try:
            return self._evaluate(tenant_id, metric_for_action(metric))
        except Exception:
            logger.exception("Usage warning evaluation failed for tenant %s (%s)", tenant_id, metric)
            return None

    def _evaluate(self, tenant_id, metric) -> Optional[WarningEvent]:
        snapshot = self.resolver.resolve(tenant_id)
        if snapshot is None:
            return None

        limit = metric.limit_for(snapshot.tier)
        if limit == UNLIMITED or limit <= 0:
            return None

        usage = snapshot.usage_of(metric)
        crossed = [t for t in self.thresholds if usage * 100 >= t * limit]
        if not crossed:
            return None
        level = max(crossed)

        period_start = snapshot.billing_period.start
        key = (tenant_id, metric.value, period_start)
        with self._lock:
            warned = self._warned.get(key)
        if warned is None:
            # Sink I/O stays outside the lock so a busy database only stalls this tenant
            stored = self.sink.highest_threshold(tenant_id, metric.value, period_start)
            with self._lock:
                self._forget_past_periods(tenant_id, metric.value, period_start)
                warned = max(stored, self._warned.get(key, 0))
                self._warned[key] = warned

        # Claim the level before appending so concurrent callers cannot both emit it
        with self._lock:
            previous = self._warned.get(key, 0)
            if level <= previous:
                return None
            self._warned[key] = level

        event = WarningEvent(
            tenant_id=tenant_id,
            metric=metric.value,
            threshold=level,
            period_start=period_start,
            quantity=usage,
            limit=limit,
            message=warning_message(metric.value, level, usage, limit),
            timestamp=self.clock()
        )
        try:
            self.sink.append(event)
        except Exception:
            with self._lock:
                if self._warned.get(key) == level:
                    self._warned[key] = previous
            raise

        logger.info("Usage warning for tenant %s: %s", tenant_id, event.message)
        return event

    def _forget_past_periods(self, tenant_id: str, metric: str, period_start: date) -> None:
        """Drop cached levels for periods before ``period_start``. Caller holds the lock."""
        stale = [
            key for key in self._warned
            if key[0] == tenant_id and key[1] == metric and key[2] < period_start
        ]
        for key in stale:
            del self._warned[key]
