"""
Unit tests for feature gating.
"""

import os
import shutil
import tempfile
from datetime import date, datetime
from unittest.mock import Mock

import pytest

from carbot_metering.core.entitlements import EntitlementResolver
from carbot_metering.core.features import FeatureGate, UnknownFeatureError, feature_field
from carbot_metering.core.tiers import TierId
from carbot_metering.storage.models import BillingPeriod, Subscription, SubscriptionStatus
from carbot_metering.storage.repository import (
    SubscriptionStore,
    UsageCounterStore,
    initialize_schema,
)

FIXED_NOW = datetime(2024, 3, 15, 10, 0, 0)
MARCH = BillingPeriod(start=date(2024, 3, 1), end=date(2024, 4, 1))


class TestFeatureField:
    """Test feature name normalization."""

    def test_snake_case(self):
        assert feature_field("api_access") == "api_access"

    def test_camel_case(self):
        assert feature_field("customIntegrations") == "custom_integrations"

    def test_unknown_feature(self):
        with pytest.raises(UnknownFeatureError, match="Unknown feature: teleport"):
            feature_field("teleport")


class TestFeatureGate:
    """Test feature checks per tier."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

        subscriptions = SubscriptionStore(self.db_path)
        for tenant_id, tier in (("basic-ws", "basic"), ("pro-ws", "professional"), ("ent-ws", "enterprise")):
            subscriptions.upsert(Subscription(tenant_id, tier, SubscriptionStatus.ACTIVE, MARCH))

        resolver = EntitlementResolver(
            subscriptions, UsageCounterStore(self.db_path), clock=lambda: FIXED_NOW
        )
        self.gate = FeatureGate(resolver)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_basic_has_email_support(self):
        result = self.gate.check_feature("basic-ws", "email_support")

        assert result.allowed
        assert result.package == TierId.BASIC

    def test_basic_lacks_api_access(self):
        result = self.gate.check_feature("basic-ws", "api_access")

        assert not result.allowed
        assert result.code == "feature_not_included"
        assert result.upgrade_suggestion == TierId.PROFESSIONAL
        assert result.upgrade_required

    def test_professional_has_api_access(self):
        assert self.gate.check_feature("pro-ws", "apiAccess").allowed

    def test_professional_lacks_white_label(self):
        result = self.gate.check_feature("pro-ws", "white_label")

        assert not result.allowed
        assert result.upgrade_suggestion == TierId.ENTERPRISE

    def test_enterprise_has_everything(self):
        for name in ("custom_integrations", "personal_support", "white_label", "api_access"):
            assert self.gate.check_feature("ent-ws", name).allowed

    def test_unknown_feature_denied(self):
        result = self.gate.check_feature("ent-ws", "time_travel")

        assert not result.allowed
        assert result.code == "unknown_feature"
        assert not result.upgrade_required

    def test_unresolvable_tenant_denied(self):
        resolver = Mock()
        resolver.resolve.return_value = None

        result = FeatureGate(resolver).check_feature("w1", "email_support")

        assert not result.allowed
        assert result.code == "package_unavailable"

    def test_to_dict(self):
        data = self.gate.check_feature("basic-ws", "phone_support").to_dict()

        assert data == {
            "allowed": False,
            "feature": "phone_support",
            "package": "basic",
            "reason": "phone_support is not included in the Basic package",
            "upgrade_required": True,
            "upgrade_suggestion": "professional",
        }
