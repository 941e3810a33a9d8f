"""
Concurrent request capping.

Bounds the number of in-flight metered requests per tenant. Every
successful acquire must be paired with exactly one release; use ``slot()``
so the release happens on every exit path. A leaked slot shrinks the
tenant's budget until the process restarts.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator

from .tiers import TIER_CATALOG, TierCatalog, TierId

logger = logging.getLogger(__name__)


class ConcurrencyLimitExceeded(Exception):
    """Raised by ``slot()`` when no slot is free."""
    def __init__(self, admission: "SlotAdmission"):
        super().__init__(
            f"Concurrent request limit of {admission.limit} reached"
        )
        self.admission = admission


@dataclass(frozen=True)
class SlotAdmission:
    """Outcome of an acquire attempt."""
    allowed: bool
    limit: int
    current: int


class ConcurrencyCapper:
    """Per-tenant in-flight request counter with a per-tier ceiling."""

    def __init__(self, catalog: TierCatalog = TIER_CATALOG):
        self.catalog = catalog
        self._in_flight: Dict[str, int] = {}
        self._lock = threading.Lock()

    def acquire(self, tenant_id: str, tier_id: TierId) -> SlotAdmission:
        """Atomically check the ceiling and take a slot if one is free."""
        limit = self.catalog.get(tier_id).rate_policy.concurrent_requests
        with self._lock:
            current = self._in_flight.get(tenant_id, 0)
            if current >= limit:
                logger.warning(
                    "Concurrent request limit %s reached for tenant %s", limit, tenant_id
                )
                return SlotAdmission(allowed=False, limit=limit, current=current)
            self._in_flight[tenant_id] = current + 1
            return SlotAdmission(allowed=True, limit=limit, current=current + 1)

    def release(self, tenant_id: str) -> None:
        """Give a slot back. Never drops the count below zero."""
        with self._lock:
            current = self._in_flight.get(tenant_id, 0)
            if current <= 0:
                logger.error("Release without acquire for tenant %s; count stays at 0", tenant_id)
                return
            if current == 1:
                del self._in_flight[tenant_id]
            else:
                self._in_flight[tenant_id] = current - 1

    def in_flight(self, tenant_id: str) -> int:
        with self._lock:
            return self._in_flight.get(tenant_id, 0)

    @contextmanager
    def slot(self, tenant_id: str, tier_id: TierId) -> Iterator[SlotAdmission]:
        """Hold a slot for the duration of the block.

        Raises:
            ConcurrencyLimitExceeded: If the tenant has no free slot
        """
        admission = self.acquire(tenant_id, tier_id)
        if not admission.allowed:
            raise ConcurrencyLimitExceeded(admission)
        try:
            yield admission
        finally:
            self.release(tenant_id)
