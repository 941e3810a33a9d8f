"""
Usage recording.

Increments the per-tenant, per-metric, per-day counter and triggers warning
evaluation. Recording fails soft: storage errors are logged and reported as
False so the user-facing action can still proceed. Under-counting is
acceptable; double counting is not, so failed writes are never retried here.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Optional

from .entitlements import EntitlementResolver
from .metrics import UnknownMetricError, metric_for_action
from .thresholds import WarningEmitter
from carbot_metering.storage.repository import UsageCounterStore

logger = logging.getLogger(__name__)


class UsageRecorder:
    """The single write path for usage counters."""

    def __init__(
        self,
        resolver: EntitlementResolver,
        usage: UsageCounterStore,
        emitter: Optional[WarningEmitter] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.resolver = resolver
        self.usage = usage
        self.emitter = emitter
        self.clock = clock

    def record(self, tenant_id: str, metric, quantity: int = 1) -> bool:
        """Add ``quantity`` to today's counter for ``metric``.

        Args:
            tenant_id: Workshop identifier
            metric: Metric or action name ("leads", "api_call", ...)
            quantity: Positive quantity to record

        Returns:
            True if the counter was incremented, False otherwise
        """
        try:
            metric = metric_for_action(metric)
        except UnknownMetricError as e:
            logger.error("Could not record usage for tenant %s: %s", tenant_id, e)
            return False

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            logger.error(
                "Refusing to record non-positive quantity %r of %s for tenant %s",
                quantity, metric.value, tenant_id
            )
            return False

        snapshot = self.resolver.resolve(tenant_id)
        if snapshot is None:
            logger.error(
                "Could not record %s x%s for tenant %s - package info unavailable",
                metric.value, quantity, tenant_id
            )
            return False

        today = self.clock().date()
        try:
            total = self.usage.upsert_add(
                tenant_id, metric.value, today, quantity, snapshot.billing_period
            )
        except sqlite3.Error as e:
            logger.error(
                "Error recording %s x%s for tenant %s on %s: %s",
                metric.value, quantity, tenant_id, today.isoformat(), e
            )
            return False

        logger.debug("Recorded %s x%s for tenant %s (day total %s)", metric.value, quantity, tenant_id, total)

        if self.emitter is not None:
            self.emitter.evaluate(tenant_id, metric)
        return True
