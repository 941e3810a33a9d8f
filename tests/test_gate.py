"""
Unit tests for the metered request gate.

Tests enforcement order, rejection responses and that slots are released
on every exit path.
"""

import os
import shutil
import tempfile
from datetime import date, datetime
from unittest.mock import patch

import pytest

from carbot_metering.config.loader import EngineConfig
from carbot_metering.core.engine import MeteringEngine
from carbot_metering.core.gate import (
    METERED_ROUTES,
    MeteringRejection,
    RequestStage,
    find_route,
)
from carbot_metering.core.limits import FailurePolicy
from carbot_metering.core.metrics import Metric
from carbot_metering.storage.models import BillingPeriod, Subscription, SubscriptionStatus

FIXED_NOW = datetime(2024, 3, 15, 10, 0, 0)
START_SECONDS = 1_700_000_000.0
MARCH = BillingPeriod(start=date(2024, 3, 1), end=date(2024, 4, 1))


class TestRoutes:
    """Test metered route lookup."""

    def test_exact_match(self):
        assert find_route("/api/leads") is METERED_ROUTES["/api/leads"]

    def test_prefix_match(self):
        route = find_route("/api/analytics/monthly")
        assert route.metric == Metric.API_CALLS

    def test_untracked_route(self):
        assert find_route("/api/health") is None
        assert find_route("/api/leadsheet") is None

    def test_only_lead_creation_is_pre_checked(self):
        assert [path for path, r in METERED_ROUTES.items() if r.pre_check] == ["/api/leads"]


class TestMeteringGate:
    """Test the gate end to end against a real database."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.config = EngineConfig(db_path=self.db_path)
        self.engine = MeteringEngine.from_config(
            self.config, clock=lambda: FIXED_NOW, monotonic_clock=lambda: START_SECONDS
        )
        self.gate = self.engine.gate
        for tenant_id, tier in (("basic-ws", "basic"), ("pro-ws", "professional")):
            self.engine.subscriptions.upsert(
                Subscription(tenant_id, tier, SubscriptionStatus.ACTIVE, MARCH)
            )

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _leads(self, tenant_id):
        return self.engine.resolve(tenant_id).usage_of(Metric.LEADS)

    def test_successful_request_recorded_and_released(self):
        with self.gate.metered("basic-ws", "lead", pre_check=True) as request:
            assert request.stage == RequestStage.LIMIT_OK
            assert self.engine.capper.in_flight("basic-ws") == 1

        assert request.stage == RequestStage.RELEASED
        assert request.recorded is True
        assert request.usage_headers()["X-Usage-Tracked"] == "true"
        assert self.engine.capper.in_flight("basic-ws") == 0
        assert self._leads("basic-ws") == 1

    def test_failed_handler_still_recorded_and_released(self):
        with pytest.raises(RuntimeError):
            with self.gate.metered("pro-ws", "api_call"):
                raise RuntimeError("upstream failed")

        assert self.engine.capper.in_flight("pro-ws") == 0
        assert self.engine.resolve("pro-ws").usage_of(Metric.API_CALLS) == 1

    def test_limit_exceeded_is_402(self):
        self.engine.usage_store.upsert_add("basic-ws", "leads", date(2024, 3, 10), 100, MARCH)

        with pytest.raises(MeteringRejection) as exc_info:
            with self.gate.metered("basic-ws", "lead", pre_check=True):
                pytest.fail("handler must not run")

        rejection = exc_info.value
        status, headers, body = rejection.to_response()
        assert status == 402
        assert headers["X-Package-Limit-Exceeded"] == "true"
        assert headers["X-Suggested-Package"] == "professional"
        assert body["upgrade_required"] is True
        assert body["current_package"] == "basic"
        assert body["current_usage"] == 100
        assert body["limit"] == 100
        assert body["upgrade_url"] == "https://carbot.chat/dashboard/billing?upgrade=professional&workshop=basic-ws"

        # Rejected requests are neither recorded nor left holding a slot
        assert self._leads("basic-ws") == 100
        assert self.engine.capper.in_flight("basic-ws") == 0

    def test_rate_limit_is_429(self):
        for _ in range(10):
            with self.gate.metered("basic-ws", "lead"):
                pass

        with pytest.raises(MeteringRejection) as exc_info:
            with self.gate.metered("basic-ws", "lead"):
                pass

        rejection = exc_info.value
        assert rejection.status == 429
        assert rejection.body["code"] == "rate_limit"
        assert rejection.headers["Retry-After"] == "3600"
        assert self._leads("basic-ws") == 10
        assert self.engine.capper.in_flight("basic-ws") == 0

    def test_concurrency_limit_is_429(self):
        for _ in range(5):
            self.engine.capper.acquire("basic-ws", self.engine.resolve("basic-ws").tier.id)

        with pytest.raises(MeteringRejection) as exc_info:
            with self.gate.metered("basic-ws", "lead"):
                pass

        rejection = exc_info.value
        assert rejection.status == 429
        assert rejection.body["code"] == "concurrency_limit"
        assert rejection.headers["Retry-After"] == "60"
        assert self.engine.capper.in_flight("basic-ws") == 5

    def test_unknown_metric_is_400(self):
        with pytest.raises(MeteringRejection) as exc_info:
            with self.gate.metered("basic-ws", "teleport"):
                pass

        assert exc_info.value.status == 400
        assert self.engine.capper.in_flight("basic-ws") == 0

    def test_invalid_quantity_is_400(self):
        with pytest.raises(MeteringRejection) as exc_info:
            with self.gate.metered("basic-ws", "lead", quantity=0):
                pass

        assert exc_info.value.body["code"] == "invalid_quantity"

    def test_package_unavailable_is_503(self):
        with patch.object(self.engine.resolver, "resolve", return_value=None):
            with pytest.raises(MeteringRejection) as exc_info:
                with self.gate.metered("basic-ws", "lead", pre_check=True):
                    pass

        assert exc_info.value.status == 503
        assert "database" not in str(exc_info.value.body).lower()
        assert self.engine.capper.in_flight("basic-ws") == 0

    def test_package_unavailable_fail_open(self):
        engine = MeteringEngine.from_config(
            EngineConfig(db_path=self.db_path, on_storage_error=FailurePolicy.OPEN),
            clock=lambda: FIXED_NOW
        )
        with patch.object(engine.resolver, "resolve", return_value=None):
            with engine.gate.metered("basic-ws", "lead", pre_check=True) as request:
                assert request.limit_check.degraded

        assert request.recorded is False

    def test_warning_emitted_on_recording(self):
        self.engine.usage_store.upsert_add("basic-ws", "leads", date(2024, 3, 10), 79, MARCH)

        with self.gate.metered("basic-ws", "lead", pre_check=True):
            pass

        events = self.engine.events.fetch_events("basic-ws")
        assert [e.threshold for e in events] == [80]

    def test_for_request_untracked(self):
        with self.gate.for_request("basic-ws", "/api/health", "GET") as request:
            assert request is None

        with self.gate.for_request("basic-ws", "/api/leads", "GET") as request:
            assert request is None

    def test_for_request_tracked(self):
        with self.gate.for_request("basic-ws", "/api/leads", "post") as request:
            assert request.metric == Metric.LEADS

        assert self._leads("basic-ws") == 1

    def test_idle_rate_windows_are_swept(self):
        """Test a long-lived engine drops rate state for tenants that went quiet."""
        now = [START_SECONDS]
        engine = MeteringEngine.from_config(
            self.config, clock=lambda: FIXED_NOW, monotonic_clock=lambda: now[0]
        )
        with engine.gate.metered("pro-ws", "api_call"):
            pass
        assert ("pro-ws", "api_calls_per_minute") in engine.rate_limiter.requests

        now[0] += 400
        with engine.gate.metered("basic-ws", "lead"):
            pass

        assert ("pro-ws", "api_calls_per_minute") not in engine.rate_limiter.requests
        assert ("basic-ws", "leads_per_hour") in engine.rate_limiter.requests
