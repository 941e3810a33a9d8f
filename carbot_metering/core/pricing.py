"""
Pricing helpers.

Euro formatting, upgrade proration and upgrade links. All functions are
pure; prices are integer EUR cents.
"""

from decimal import Decimal, ROUND_UP
from typing import Optional
from urllib.parse import urlencode

from .tiers import TierId

DEFAULT_BASE_URL = "https://carbot.chat"


def format_euro(minor_units: Optional[int]) -> str:
    """Format cents the German way, e.g. 7900 -> "79,00 €".

    ``None`` means individual pricing and renders as "Individuell".
    """
    if minor_units is None:
        return "Individuell"
    amount = Decimal(minor_units) / Decimal("100")
    # 1,234.50 -> 1.234,50
    text = f"{amount:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{text} €"


def prorate_upgrade(
    current_price: Optional[int],
    target_price: Optional[int],
    days_remaining: int,
    period_days: int
) -> int:
    """Charge for upgrading mid-period, in cents.

    The price difference is charged for the remaining share of the period
    and rounded UP to the cent.

    Args:
        current_price: Current tier price per period in cents
        target_price: Target tier price per period in cents
        days_remaining: Days left in the billing period
        period_days: Length of the billing period in days

    Returns:
        Amount due now, in cents

    Raises:
        ValueError: For individual pricing, downgrades or impossible day counts
    """
    if current_price is None or target_price is None:
        raise ValueError("Individual pricing cannot be prorated")
    if target_price < current_price:
        raise ValueError("target price is lower than current price")
    if period_days <= 0:
        raise ValueError("period_days must be > 0")
    if not 0 <= days_remaining <= period_days:
        raise ValueError("days_remaining must be between 0 and period_days")

    difference = Decimal(target_price - current_price)
    share = Decimal(days_remaining) / Decimal(period_days)
    return int((difference * share).quantize(Decimal("1"), rounding=ROUND_UP))


def generate_upgrade_url(tenant_id: str, target, base_url: str = DEFAULT_BASE_URL) -> str:
    """Link to the billing page preselecting ``target``."""
    if isinstance(target, TierId):
        target = target.value
    query = urlencode({"upgrade": target, "workshop": tenant_id})
    return f"{base_url.rstrip('/')}/dashboard/billing?{query}"
