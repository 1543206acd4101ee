#!/usr/bin/env python3
"""
Amazon P&L Sync - command line entry point.

Runs the sync pipeline against the configured database without the API server.

Usage:
    python3 run_sync.py sync                       # Full sync (orders, finances, summaries)
    python3 run_sync.py sync --dry-run             # Same counts, nothing persisted
    python3 run_sync.py orders --days 7            # Orders only
    python3 run_sync.py finances --days 7          # Financial events only
    python3 run_sync.py summary --days 30          # Recompute daily summaries
    python3 run_sync.py set-cost --sku ABC --unit-cost 4.20
    python3 run_sync.py status
"""

import asyncio
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pnl_sync.core.config import ConfigError, settings
from pnl_sync.core.currency import format_currency
from pnl_sync.core.logging import get_logger, setup_logging
from pnl_sync.db.session import create_db_engine, create_session_factory, init_database, session_scope
from pnl_sync.metrics.daily_summary import list_daily_summaries, set_unit_cost
from pnl_sync.sync.ledger import DEFAULT_STATUS_LIMIT, get_sync_status
from pnl_sync.sync.pipeline import SyncPipeline, SyncRequest, SyncResult

# Initialize CLI and console
app = typer.Typer(help="Amazon P&L Sync - CLI Tool")
console = Console()
logger = get_logger(__name__)


def _session_factory() -> Any:
    engine = create_db_engine()
    init_database(engine)
    return create_session_factory(engine)


def _build_request(**kwargs: Any) -> SyncRequest:
    try:
        return SyncRequest(**kwargs)
    except ValidationError as e:
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            console.print(f"[red]Invalid {field}: {error['msg']}[/red]")
        raise typer.Exit(2)


def _print_header(title: str, dry_run: bool) -> None:
    console.print()
    console.print(Panel.fit(
        f"[bold cyan]{title}[/bold cyan]\n"
        f"{'[yellow]DRY RUN - nothing is persisted[/yellow]' if dry_run else 'Live mode'}",
        border_style="cyan"
    ))
    console.print()


def _print_result(result: SyncResult) -> None:
    """Render counts, truncation flags and warnings of a finished run."""
    table = Table(title=f"Sync results ({result.run_type})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Marketplace", result.marketplace_id or "-")

    if result.orders:
        for key in ("orders_fetched", "orders_upserted", "order_items_upserted", "products_upserted"):
            table.add_row(key.replace("_", " ").capitalize(), str(result.orders[key]))

    if result.finances:
        for key in (
            "events_fetched",
            "events_upserted",
            "events_linked",
            "refunds_allocated",
            "refunds_unattributed",
        ):
            table.add_row(key.replace("_", " ").capitalize(), str(result.finances[key]))

    if result.summary:
        table.add_row("Window", f"{result.summary['start_date']} .. {result.summary['end_date']}")
        table.add_row("Summaries written", str(result.summary["summaries_written"]))
        table.add_row("Units without unit cost", str(result.summary["missing_cogs_items"]))

    for flag, hit in result.truncation_flags.items():
        if hit:
            table.add_row(flag.replace("_", " ").capitalize(), "[yellow]yes[/yellow]")

    table.add_row("Duration", f"{result.duration_ms or 0} ms")

    console.print(table)
    console.print()

    for warning in result.warnings:
        console.print(f"[yellow]! {warning}[/yellow]")

    if result.dry_run:
        console.print("[yellow]DRY RUN: no changes were persisted[/yellow]")
    else:
        console.print("[green]✓ Sync completed[/green]")


def _run(kind: str, request: SyncRequest) -> SyncResult:
    """Execute one pipeline operation and report the outcome."""
    setup_logging()
    _print_header(f"Amazon P&L Sync - {kind}", request.dry_run)

    try:
        pipeline = SyncPipeline(_session_factory())
        runner = {
            "full": pipeline.run_full_sync,
            "orders": pipeline.run_orders_sync,
            "finances": pipeline.run_finances_sync,
            "daily-summary": pipeline.run_daily_summary,
        }[kind]

        result = asyncio.run(runner(request))
        _print_result(result)
        return result

    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Sync cancelled by user[/yellow]")
        raise typer.Exit(0)

    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    except Exception as e:
        console.print()
        console.print(f"[red]ERROR: {e}[/red]")
        logger.exception("Sync failed")
        raise typer.Exit(1)


@app.command()
def sync(
    days: Optional[int] = typer.Option(None, "--days", help="Lookback in days (default 120)"),
    marketplace_id: Optional[str] = typer.Option(None, "--marketplace-id", help="Marketplace ID"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Order page limit"),
    max_orders: Optional[int] = typer.Option(None, "--max-orders", help="Order count limit"),
    max_orders_with_items: Optional[int] = typer.Option(
        None, "--max-orders-with-items", help="Orders whose line items are fetched"
    ),
    finances_max_pages: Optional[int] = typer.Option(
        None, "--finances-max-pages", help="Financial event page limit"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute counts without persisting"),
) -> None:
    """
    Full sync: orders, financial events and daily summaries.
    """
    request = _build_request(
        days=days,
        marketplace_id=marketplace_id,
        max_pages=max_pages,
        max_orders=max_orders,
        max_orders_with_items=max_orders_with_items,
        finances_max_pages=finances_max_pages,
        dry_run=dry_run,
    )
    _run("full", request)


@app.command()
def orders(
    days: Optional[int] = typer.Option(None, "--days", help="Lookback in days"),
    marketplace_id: Optional[str] = typer.Option(None, "--marketplace-id", help="Marketplace ID"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Order page limit"),
    max_orders: Optional[int] = typer.Option(None, "--max-orders", help="Order count limit"),
    max_orders_with_items: Optional[int] = typer.Option(
        None, "--max-orders-with-items", help="Orders whose line items are fetched"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute counts without persisting"),
) -> None:
    """Sync orders and their line items."""
    request = _build_request(
        days=days,
        marketplace_id=marketplace_id,
        max_pages=max_pages,
        max_orders=max_orders,
        max_orders_with_items=max_orders_with_items,
        dry_run=dry_run,
    )
    _run("orders", request)


@app.command()
def finances(
    days: Optional[int] = typer.Option(None, "--days", help="Lookback in days"),
    marketplace_id: Optional[str] = typer.Option(None, "--marketplace-id", help="Marketplace ID"),
    finances_max_pages: Optional[int] = typer.Option(
        None, "--max-pages", help="Financial event page limit"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute counts without persisting"),
) -> None:
    """Sync financial events and attribute refunds to line items."""
    request = _build_request(
        days=days,
        marketplace_id=marketplace_id,
        finances_max_pages=finances_max_pages,
        dry_run=dry_run,
    )
    _run("finances", request)


@app.command()
def summary(
    days: Optional[int] = typer.Option(None, "--days", help="Window length in days"),
    marketplace_id: Optional[str] = typer.Option(None, "--marketplace-id", help="Marketplace ID"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute without persisting"),
    show: bool = typer.Option(True, "--show/--no-show", help="Print the recomputed days"),
) -> None:
    """Recompute daily P&L summaries from stored data."""
    request = _build_request(days=days, marketplace_id=marketplace_id, dry_run=dry_run)
    result = _run("daily-summary", request)

    if not show or dry_run or not result.summary:
        return

    marketplace_id = result.summary["marketplace_id"]
    start = date.fromisoformat(result.summary["start_date"])
    end = date.fromisoformat(result.summary["end_date"])

    with session_scope(_session_factory()) as session:
        rows = list_daily_summaries(session, marketplace_id, start, end)

        table = Table(title=f"Daily P&L ({marketplace_id})")
        for column in ("Date", "Orders", "Units", "Sales", "Refunds", "Fees", "COGS", "Net profit"):
            table.add_column(column, justify="right" if column != "Date" else "left")

        for row in rows:
            if row.orders_count == 0 and row.sales == 0 and row.net_payout == 0:
                continue
            table.add_row(
                row.summary_date.isoformat(),
                str(row.orders_count),
                str(row.units),
                format_currency(row.sales, settings.default_currency),
                format_currency(row.refunds, settings.default_currency),
                format_currency(row.amazon_fees + row.other_fees, settings.default_currency),
                format_currency(row.cogs, settings.default_currency),
                format_currency(row.net_profit, settings.default_currency),
            )

        console.print()
        console.print(table)


@app.command("set-cost")
def set_cost(
    unit_cost: str = typer.Option(..., "--unit-cost", help="Cost of goods per unit"),
    sku: Optional[str] = typer.Option(None, "--sku", help="Seller SKU"),
    asin: Optional[str] = typer.Option(None, "--asin", help="ASIN"),
    includes_vat: bool = typer.Option(False, "--includes-vat", help="Cost includes VAT"),
) -> None:
    """Set the unit cost of a product by SKU or ASIN."""
    try:
        cost = Decimal(unit_cost)
    except InvalidOperation:
        console.print(f"[red]Invalid unit cost: {unit_cost}[/red]")
        raise typer.Exit(2)

    try:
        with session_scope(_session_factory()) as session:
            set_unit_cost(session, cost, sku=sku, asin=asin, includes_vat=includes_vat)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    console.print(
        f"[green]✓[/green] Unit cost for {sku or asin} set to "
        f"{format_currency(cost, settings.default_currency)}"
    )


@app.command()
def status(
    limit: int = typer.Option(DEFAULT_STATUS_LIMIT, "--limit", help="Number of runs to show"),
) -> None:
    """Show recent sync runs."""
    try:
        with session_scope(_session_factory()) as session:
            sync_status = get_sync_status(session, limit=limit)

        console.print()
        console.print(Panel.fit("[bold cyan]Sync Status[/bold cyan]", border_style="cyan"))
        console.print()

        console.print(f"Last success: [green]{sync_status['last_success_at'] or '-'}[/green]")
        console.print(f"Last failure: [red]{sync_status['last_failure_at'] or '-'}[/red]")
        console.print()

        if not sync_status["runs"]:
            console.print("[yellow]No sync has run yet[/yellow]")
            return

        table = Table()
        table.add_column("Started", style="dim")
        table.add_column("Type", style="cyan")
        table.add_column("Status")
        table.add_column("Dry run")
        table.add_column("Duration", justify="right")
        table.add_column("Warnings", justify="right")
        table.add_column("Error", style="red")

        for run in sync_status["runs"]:
            colour = {"success": "green", "failed": "red"}.get(run["status"], "yellow")
            table.add_row(
                run["started_at"] or "-",
                run["run_type"],
                f"[{colour}]{run['status']}[/{colour}]",
                "yes" if run["dry_run"] else "no",
                f"{run['duration_ms']} ms" if run["duration_ms"] is not None else "-",
                str(len(run["warnings"])),
                run["error_message"] or "",
            )

        console.print(table)

    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command("init-db")
def init_db() -> None:
    """Create the database tables."""
    console.print("[dim]Initialising database...[/dim]")
    _session_factory()
    console.print("[green]✓[/green] Database ready")


if __name__ == "__main__":
    app()
