"""
Engine assembly.

``MeteringEngine`` is the process-wide state object: it owns the stores and
every component, including the in-memory rate-limit and concurrency state.
Create one at process start and hand it to request handlers; that in-memory
state lives exactly as long as the engine instance.
"""

import time
from datetime import datetime
from typing import Callable, Optional

from .concurrency import ConcurrencyCapper
from .entitlements import EntitlementResolver
from .features import FeatureGate
from .gate import MeteringGate
from .limits import LimitChecker
from .rate_limiter import RateLimiter
from .thresholds import WarningEmitter
from .usage import UsageRecorder
from carbot_metering.config.loader import EngineConfig
from carbot_metering.storage.repository import (
    EventSink,
    SubscriptionStore,
    UsageCounterStore,
    initialize_schema,
)


class MeteringEngine:
    """Entitlement and usage-metering engine for one process."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic_clock: Callable[[], float] = time.time
    ):
        """Wire up all components.

        Args:
            config: Engine configuration (defaults apply when omitted)
            clock: Wall clock for billing days and event timestamps
            monotonic_clock: Seconds clock for the rate windows
        """
        self.config = config or EngineConfig.default()
        catalog = self.config.catalog()

        self.subscriptions = SubscriptionStore(self.config.db_path)
        self.usage_store = UsageCounterStore(self.config.db_path)
        self.events = EventSink(self.config.db_path)

        self.resolver = EntitlementResolver(
            self.subscriptions, self.usage_store, catalog=catalog, clock=clock
        )
        self.limits = LimitChecker(self.resolver, on_storage_error=self.config.on_storage_error)
        self.features = FeatureGate(self.resolver)
        self.emitter = WarningEmitter(
            self.resolver, self.events, thresholds=self.config.warning_thresholds, clock=clock
        )
        self.recorder = UsageRecorder(self.resolver, self.usage_store, emitter=self.emitter, clock=clock)
        self.rate_limiter = RateLimiter(catalog=catalog, clock=monotonic_clock)
        self.capper = ConcurrencyCapper(catalog=catalog)
        self.gate = MeteringGate(
            self.resolver,
            self.limits,
            self.rate_limiter,
            self.capper,
            self.recorder,
            upgrade_base_url=self.config.upgrade_base_url
        )

    @classmethod
    def from_config(cls, config: EngineConfig, initialize: bool = True, **kwargs) -> "MeteringEngine":
        """Build an engine, creating the schema first unless told not to."""
        if initialize:
            initialize_schema(config.db_path)
        return cls(config, **kwargs)

    # Convenience pass-throughs for the common operations

    def resolve(self, tenant_id: str):
        return self.resolver.resolve(tenant_id)

    def check_limit(self, tenant_id: str, action, quantity: int = 1):
        return self.limits.check_limit(tenant_id, action, quantity)

    def check_feature(self, tenant_id: str, feature_name: str):
        return self.features.check_feature(tenant_id, feature_name)

    def record(self, tenant_id: str, metric, quantity: int = 1) -> bool:
        return self.recorder.record(tenant_id, metric, quantity)
