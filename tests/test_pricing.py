"""
Unit tests for pricing helpers.

Tests euro formatting, proration rounding and upgrade links.
"""

import pytest

from carbot_metering.core.pricing import format_euro, generate_upgrade_url, prorate_upgrade
from carbot_metering.core.tiers import TierId


class TestFormatEuro:
    """Test German currency formatting."""

    def test_package_prices(self):
        assert format_euro(2900) == "29,00 €"
        assert format_euro(7900) == "79,00 €"

    def test_thousands_separator(self):
        assert format_euro(123450) == "1.234,50 €"

    def test_individual_pricing(self):
        assert format_euro(None) == "Individuell"


class TestProration:
    """Test upgrade proration."""

    def test_full_period(self):
        assert prorate_upgrade(2900, 7900, 30, 30) == 5000

    def test_half_period(self):
        assert prorate_upgrade(2900, 7900, 15, 30) == 2500

    def test_rounds_up_to_the_cent(self):
        """5000 * 1/3 = 1666.67 cents must round up, never down."""
        assert prorate_upgrade(2900, 7900, 10, 30) == 1667

    def test_no_days_left(self):
        assert prorate_upgrade(2900, 7900, 0, 30) == 0

    def test_individual_pricing_rejected(self):
        with pytest.raises(ValueError, match="Individual pricing"):
            prorate_upgrade(7900, None, 10, 30)

    def test_downgrade_rejected(self):
        with pytest.raises(ValueError, match="lower than current"):
            prorate_upgrade(7900, 2900, 10, 30)

    @pytest.mark.parametrize("days_remaining,period_days", [(31, 30), (-1, 30), (0, 0)])
    def test_impossible_days_rejected(self, days_remaining, period_days):
        with pytest.raises(ValueError):
            prorate_upgrade(2900, 7900, days_remaining, period_days)


class TestUpgradeUrl:
    """Test billing page links."""

    def test_default_base_url(self):
        url = generate_upgrade_url("ws-42", TierId.PROFESSIONAL)
        assert url == "https://carbot.chat/dashboard/billing?upgrade=professional&workshop=ws-42"

    def test_custom_base_url_and_escaping(self):
        url = generate_upgrade_url("ws 1&2", "enterprise", base_url="http://localhost:3000/")
        assert url == "http://localhost:3000/dashboard/billing?upgrade=enterprise&workshop=ws+1%262"
