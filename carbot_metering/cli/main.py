"""
CLI interface for CarBot metering.

Provides command-line access to packages, subscriptions, limits and usage.
"""

import logging
import sqlite3
import sys
from dataclasses import replace
from datetime import date, timedelta
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from carbot_metering.config.loader import EngineConfig, load_engine_config
from carbot_metering.core.engine import MeteringEngine
from carbot_metering.core.limits import (
    CODE_INVALID_QUANTITY,
    CODE_PACKAGE_UNAVAILABLE,
    CODE_UNKNOWN_METRIC,
)
from carbot_metering.core.metrics import Metric
from carbot_metering.core.pricing import format_euro
from carbot_metering.core.reporting import generate_usage_report
from carbot_metering.core.tiers import UNLIMITED, TierId, UnknownTierError
from carbot_metering.storage.models import BillingPeriod, Subscription, SubscriptionStatus
from carbot_metering.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_DENIED = 1  # Check answered "no"
EXIT_CODE_ERROR = 2

# Denials caused by bad input or unreadable storage rather than the package
ERROR_CODES = {
    CODE_UNKNOWN_METRIC,
    CODE_INVALID_QUANTITY,
    CODE_PACKAGE_UNAVAILABLE,
    "unknown_feature",
}


def _format_limit(value: int) -> str:
    return "Unbegrenzt" if value == UNLIMITED else f"{value:,}".replace(",", ".")


def _load_config(ctx: typer.Context) -> EngineConfig:
    options = ctx.obj or {}
    config = load_engine_config(options["config"]) if options.get("config") else EngineConfig.default()
    if options.get("db"):
        config = replace(config, db_path=options["db"])
    return config


def _config_or_exit(ctx: typer.Context) -> EngineConfig:
    try:
        return _load_config(ctx)
    except (OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)


def _engine(ctx: typer.Context) -> MeteringEngine:
    try:
        return MeteringEngine.from_config(_load_config(ctx))
    except (OSError, ValueError, yaml.YAMLError, sqlite3.Error) as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity")
):
    """CarBot metering CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)]
        )
    ctx.obj = {"config": config, "db": db}
    if ctx.invoked_subcommand is None:
        console.print("CarBot Metering - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the metering database."""
    try:
        config = _load_config(ctx)
        initialize_schema(config.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)


@app.command()
def tiers(ctx: typer.Context):
    """Show the package catalog."""
    catalog = _config_or_exit(ctx).catalog()
    table = Table(title="CarBot Pakete")
    for column in ("Paket", "Preis/Monat", "Leads/Monat", "Nutzer", "API Calls",
                   "Speicher (GB)", "Integrationen", "API/Min", "Leads/Std", "Parallel"):
        table.add_column(column)

    for tier_id in TierId:
        tier = catalog.get(tier_id)
        table.add_row(
            tier.name,
            format_euro(tier.price_minor_units),
            _format_limit(tier.limits.monthly_leads),
            _format_limit(tier.limits.seats),
            _format_limit(tier.limits.api_calls),
            _format_limit(tier.limits.storage_gb),
            _format_limit(tier.limits.integrations),
            _format_limit(tier.rate_policy.api_calls_per_minute),
            _format_limit(tier.rate_policy.leads_per_hour),
            str(tier.rate_policy.concurrent_requests),
        )
    console.print(table)


@app.command()
def subscribe(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(..., help="Workshop id"),
    tier: str = typer.Argument(..., help="basic, professional or enterprise"),
    status: str = typer.Option("active", "--status", "-s", help="active, inactive or past_due"),
    start: Optional[str] = typer.Option(None, "--start", help="Period start (YYYY-MM-DD), defaults to today"),
    days: int = typer.Option(30, "--days", help="Period length in days")
):
    """Create or replace a workshop's subscription."""
    try:
        tier_id = TierId.parse(tier)
        period_start = date.fromisoformat(start) if start else date.today()
        subscription = Subscription(
            tenant_id=tenant_id,
            tier_id=tier_id.value,
            status=SubscriptionStatus(status.lower()),
            period=BillingPeriod(start=period_start, end=period_start + timedelta(days=days))
        )
    except (UnknownTierError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    engine = _engine(ctx)
    engine.subscriptions.upsert(subscription)
    console.print(
        f"[green]✓[/] {tenant_id} → {tier_id.value} ({subscription.status.value}, "
        f"{subscription.period.start.isoformat()} – {subscription.period.end.isoformat()})"
    )


@app.command()
def usage(ctx: typer.Context, tenant_id: str = typer.Argument(..., help="Workshop id")):
    """Show a workshop's package and usage for the current billing period."""
    engine = _engine(ctx)
    snapshot = engine.resolve(tenant_id)
    if snapshot is None:
        console.print("[red]Unable to determine package information[/]")
        sys.exit(EXIT_CODE_ERROR)

    period = snapshot.billing_period
    note = " [dim](kein aktives Abo)[/]" if snapshot.fallback else ""
    console.print(f"\n[bold]Paket:[/bold] {snapshot.tier.name}{note}")
    console.print(f"Abrechnungszeitraum: {period.start.isoformat()} – {period.end.isoformat()}")

    table = Table()
    table.add_column("Metrik")
    table.add_column("Verbrauch", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Verbleibend", justify="right")
    for metric in Metric:
        used = snapshot.usage_of(metric)
        limit = metric.limit_for(snapshot.tier)
        remaining = "—" if limit == UNLIMITED else str(max(0, limit - used))
        table.add_row(metric.value, str(used), _format_limit(limit), remaining)
    console.print(table)


@app.command()
def check(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(..., help="Workshop id"),
    action: str = typer.Argument(..., help="lead, api_call, storage, seat or integration"),
    quantity: int = typer.Option(1, "--quantity", "-q", help="Requested quantity")
):
    """Check a requested quantity against the monthly limit."""
    engine = _engine(ctx)
    result = engine.check_limit(tenant_id, action, quantity)

    if result.allowed:
        if result.unlimited:
            console.print("[green]ALLOWED[/] (unbegrenzt)")
        elif result.degraded:
            console.print(f"[yellow]ALLOWED[/] ({result.reason})")
        else:
            console.print(f"[green]ALLOWED[/] ({result.current_usage}/{result.limit}, verbleibend {result.remaining})")
        sys.exit(EXIT_CODE_OK)

    if result.code in ERROR_CODES:
        console.print(f"[red]Error:[/] {result.reason}")
        sys.exit(EXIT_CODE_ERROR)

    console.print(f"[red]DENIED[/] {result.reason}")
    if result.upgrade_suggestion:
        console.print(f"Upgrade empfohlen: {result.upgrade_suggestion.value}")
    sys.exit(EXIT_CODE_DENIED)


@app.command()
def feature(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(..., help="Workshop id"),
    name: str = typer.Argument(..., help="Feature name, e.g. api_access")
):
    """Check whether a workshop's package includes a feature."""
    engine = _engine(ctx)
    result = engine.check_feature(tenant_id, name)
    if result.allowed:
        console.print(f"[green]ALLOWED[/] {name}")
        sys.exit(EXIT_CODE_OK)

    if result.code in ERROR_CODES:
        console.print(f"[red]Error:[/] {result.reason}")
        sys.exit(EXIT_CODE_ERROR)

    console.print(f"[red]DENIED[/] {result.reason}")
    if result.upgrade_suggestion:
        console.print(f"Upgrade empfohlen: {result.upgrade_suggestion.value}")
    sys.exit(EXIT_CODE_DENIED)


@app.command()
def record(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(..., help="Workshop id"),
    metric: str = typer.Argument(..., help="leads, api_calls, storage_gb, seats or integrations"),
    quantity: int = typer.Option(1, "--quantity", "-q", help="Quantity to record")
):
    """Record usage for a workshop."""
    engine = _engine(ctx)
    if engine.record(tenant_id, metric, quantity):
        console.print(f"[green]✓[/] Recorded {quantity} {metric} for {tenant_id}")
        sys.exit(EXIT_CODE_OK)

    console.print("[red]Usage could not be recorded[/] (see log with --verbose)")
    sys.exit(EXIT_CODE_ERROR)


@app.command()
def report(
    ctx: typer.Context,
    tenant_id: str = typer.Argument(..., help="Workshop id"),
    period: str = typer.Option("month", "--period", "-p", help="day, week or month")
):
    """Show a usage report with a daily breakdown."""
    engine = _engine(ctx)
    try:
        result = generate_usage_report(engine.usage_store, tenant_id, period)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    console.print(f"\n[bold]Nutzungsbericht[/bold] {tenant_id} ({result.start_date} – {result.end_date})")
    if not result.total_usage:
        console.print("\n[dim]Keine Nutzung im Zeitraum.[/]")
        return

    for metric_name, total in sorted(result.total_usage.items()):
        console.print(f"{metric_name}: {total}")

    table = Table()
    table.add_column("Datum")
    metrics = sorted(result.total_usage)
    for metric_name in metrics:
        table.add_column(metric_name, justify="right")
    for day, values in result.daily_breakdown.items():
        table.add_row(day.isoformat(), *(str(values.get(m, 0)) for m in metrics))
    console.print(table)


if __name__ == "__main__":
    app()
