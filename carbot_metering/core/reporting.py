"""
Usage reports.

Aggregates daily counters over a trailing day, week or month for dashboards
and the CLI.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict

from carbot_metering.storage.repository import UsageCounterStore

REPORT_PERIODS = {
    "day": 1,
    "week": 7,
    "month": 30,
}


@dataclass
class UsageReport:
    """Totals and per-day breakdown of a tenant's usage."""
    tenant_id: str
    period: str
    start_date: date
    end_date: date  # inclusive
    total_usage: Dict[str, int] = field(default_factory=dict)
    daily_breakdown: Dict[date, Dict[str, int]] = field(default_factory=dict)


def generate_usage_report(
    store: UsageCounterStore,
    tenant_id: str,
    period: str = "month",
    today: date = None
) -> UsageReport:
    """Build a usage report covering the trailing ``period`` up to ``today``.

    Args:
        store: Usage counter store to read from
        tenant_id: Workshop identifier
        period: "day", "week" or "month"
        today: Last day included (defaults to the current date)

    Returns:
        UsageReport with daily rows newest first

    Raises:
        ValueError: If period is unknown
        sqlite3.Error: If the counters cannot be read
    """
    if period not in REPORT_PERIODS:
        raise ValueError(f"period must be one of: {sorted(REPORT_PERIODS)}")

    today = today or date.today()
    start = today - timedelta(days=REPORT_PERIODS[period])
    report = UsageReport(
        tenant_id=tenant_id,
        period=period,
        start_date=start,
        end_date=today
    )

    for row in store.daily(tenant_id, start, today + timedelta(days=1)):
        report.total_usage[row.metric] = report.total_usage.get(row.metric, 0) + row.quantity
        report.daily_breakdown.setdefault(row.usage_date, {})[row.metric] = row.quantity

    return report
