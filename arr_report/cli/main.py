"""
CLI interface for ARR Report.

Provides command-line access to the ledger sync, the CRM and ledger reports,
deal metrics writeback and the monthly summary.
"""

import logging
import sys
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from arr_report.clients.crm import CrmClient
from arr_report.clients.fx import FrankfurterRateSource
from arr_report.clients.ledger import LedgerClient
from arr_report.config.loader import Settings, StoreKind, load_settings
from arr_report.core.dates import parse_date
from arr_report.core.fx import CurrencyNormalizer
from arr_report.core.report import Report, ReportRequest, ReportService, parse_grain, parse_mode
from arr_report.core.summary import build_monthly_summary
from arr_report.core.sync import SyncCache
from arr_report.errors import ArrReportError, ConfigurationMissingError, InputValidationError
from arr_report.storage.repository import (
    JsonFileSnapshotStore,
    KeyValueSnapshotStore,
    SqliteKeyValueBackend,
    initialize_schema,
)

app = typer.Typer(help="ARR and contracted ARR reporting.")
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAILURE = 1  # Upstream or unexpected failure
EXIT_CODE_INVALID = 2  # Bad input or missing configuration

_options = {"config_path": None}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _exit_code_for(error: Exception) -> int:
    if isinstance(error, (InputValidationError, ConfigurationMissingError)):
        return EXIT_CODE_INVALID
    return EXIT_CODE_FAILURE


def _fail(error: Exception) -> None:
    label = error.kind if isinstance(error, ArrReportError) else "error"
    console.print(f"[red]Error ({label}):[/] {error}")
    sys.exit(_exit_code_for(error))


def get_settings() -> Settings:
    """Settings from the --config file (if any) with environment overrides."""
    config_path = _options["config_path"]
    try:
        base = load_settings(config_path) if config_path else None
        return Settings.from_env(base=base)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_INVALID)


def build_sync_cache(settings: Settings, with_ledger: bool = True) -> SyncCache:
    """Sync cache over the configured store, with a ledger client if requested."""
    if settings.sync.store == StoreKind.JSON:
        store = JsonFileSnapshotStore(settings.sync.path)
    else:
        store = KeyValueSnapshotStore(
            SqliteKeyValueBackend(settings.sync.path), settings.sync.snapshot_key
        )
    ledger = LedgerClient(invoice_status=settings.ledger.invoice_status) if with_ledger else None
    return SyncCache(
        store,
        ledger,
        max_history_days=settings.sync.max_history_days,
        freshness_seconds=settings.sync.freshness_seconds,
        max_records_per_run=settings.sync.max_records_per_run,
        line_concurrency=settings.ledger.line_concurrency,
    )


def build_report_service(settings: Settings, source: str = "crm") -> ReportService:
    """Report service wired for the CRM or the ledger source."""
    fx = CurrencyNormalizer(FrankfurterRateSource())
    if source == "ledger":
        sync_cache = build_sync_cache(settings, with_ledger=settings.report.auto_sync)
        return ReportService(fx, sync_cache=sync_cache, settings=settings)
    crm = CrmClient(
        cache_ttl_seconds=settings.crm.cache_ttl_seconds,
        association_concurrency=settings.crm.association_concurrency,
        batch_concurrency=settings.crm.batch_concurrency,
    )
    return ReportService(fx, crm=crm, settings=settings)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", envvar="ARR_REPORT_CONFIG", help="Path to YAML config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """ARR Report CLI."""
    _options["config_path"] = config
    _setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("ARR Report - Use --help to see available commands")


@app.command()
def init():
    """Initialize the snapshot store."""
    settings = get_settings()
    try:
        if settings.sync.store == StoreKind.SQLITE:
            initialize_schema(settings.sync.path)
        console.print(f"[green]✓[/] Snapshot store ready at {settings.sync.path}")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing store:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAILURE)


@app.command()
def status():
    """Show the ledger sync snapshot status."""
    settings = get_settings()
    try:
        stats = build_sync_cache(settings, with_ledger=False).stats()
    except Exception as e:
        _fail(e)
        return

    table = Table(title="Ledger sync status")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Updated at", _format_instant(stats.updated_at))
    table.add_row(
        "Watermark",
        f"{_format_instant(stats.watermark.start)} .. {_format_instant(stats.watermark.end)}"
        if stats.watermark else "-",
    )
    table.add_row(
        "Active range",
        f"{_format_instant(stats.active_range.start)} .. {_format_instant(stats.active_range.end)}"
        if stats.active_range else "-",
    )
    table.add_row("Cursor", stats.cursor or "-")
    table.add_row("Exhausted", "yes" if stats.exhausted else "no")
    table.add_row("Line items", str(stats.item_count))
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def sync(
    start: Optional[str] = typer.Option(None, "--start", "-s", help="Range start (YYYY-MM-DD)"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Range end (YYYY-MM-DD)"),
    force: bool = typer.Option(False, "--force", "-f", help="Fetch even when covered or fresh"),
    iterations: int = typer.Option(1, "--iterations", "-n", help="Batches to run (1-20)"),
):
    """Synchronize billing-ledger line items into the snapshot store."""
    settings = get_settings()
    try:
        summary = build_sync_cache(settings).sync_until_exhausted(
            start_date=start,
            end_date=end,
            force=force,
            iterations=iterations,
            default_lookback_days=settings.sync.default_lookback_days,
        )
    except Exception as e:
        _fail(e)
        return

    table = Table(title=f"Ledger sync {summary.start_date} .. {summary.end_date}")
    table.add_column("Run", justify="right")
    table.add_column("Reason")
    table.add_column("Invoices", justify="right")
    table.add_column("More pages")
    for i, run in enumerate(summary.runs, start=1):
        table.add_row(str(i), run.reason, str(run.synced_records), "yes" if run.has_more else "no")
    console.print(table)
    console.print(
        f"Synced {summary.synced_records_total} invoices; "
        f"{summary.stats.item_count if summary.stats else 0} line items stored"
    )
    sys.exit(EXIT_CODE_OK)


@app.command()
def report(
    start: str = typer.Argument(..., help="Range start (YYYY-MM-DD)"),
    end: str = typer.Argument(..., help="Range end (YYYY-MM-DD)"),
    mode: str = typer.Option("booked", "--mode", "-m", help="booked | contracted"),
    grain: str = typer.Option("monthly", "--grain", "-g", help="daily | monthly | quarterly | annually"),
    include_all_deals: bool = typer.Option(
        False, "--include-all-deals", help="Contracted mode: keep deals closed outside the range"
    ),
    rows: bool = typer.Option(False, "--rows", help="Also print per-line-item rows"),
):
    """Generate the CRM ARR report."""
    settings = get_settings()
    try:
        request = ReportRequest(
            start_date=start,
            end_date=end,
            mode=parse_mode(mode),
            grain=parse_grain(grain),
            include_all_deals=include_all_deals,
        )
        result = build_report_service(settings).generate_crm_report(request)
    except Exception as e:
        _fail(e)
        return

    _display_report(result, f"{request.mode.value.capitalize()} ARR ({settings.report.target_currency})", rows)
    sys.exit(EXIT_CODE_OK)


@app.command("ledger-report")
def ledger_report(
    start: str = typer.Argument(..., help="Range start (YYYY-MM-DD)"),
    end: str = typer.Argument(..., help="Range end (YYYY-MM-DD)"),
    grain: str = typer.Option("monthly", "--grain", "-g", help="daily | monthly | quarterly | annually"),
    rows: bool = typer.Option(False, "--rows", help="Also print per-line-item rows"),
):
    """Generate the billing-ledger ARR report from synchronized data."""
    settings = get_settings()
    try:
        result = build_report_service(settings, source="ledger").generate_ledger_report(
            start, end, parse_grain(grain)
        )
    except Exception as e:
        _fail(e)
        return

    _display_report(result, f"Ledger ARR ({settings.report.target_currency})", rows)
    sys.exit(EXIT_CODE_OK)


@app.command("deal-metrics")
def deal_metrics(
    as_of: Optional[str] = typer.Option(None, "--as-of", help="Day to evaluate (YYYY-MM-DD)"),
    push: bool = typer.Option(False, "--push", help="Write the values back to the CRM"),
):
    """Compute current ARR and contracted ARR per deal."""
    settings = get_settings()
    try:
        service = build_report_service(settings)
        if push:
            result = service.push_current_deal_metrics(as_of)
            metrics = result.metrics
        else:
            metrics = service.current_deal_metrics(as_of)
    except Exception as e:
        _fail(e)
        return

    table = Table(title="Current deal metrics")
    table.add_column("Deal")
    table.add_column("ARR", justify="right")
    table.add_column("C-ARR", justify="right")
    for m in metrics:
        table.add_row(m.deal_id, _format_amount(m.current_arr), _format_amount(m.current_carr))
    console.print(table)
    if push:
        console.print(
            f"[green]✓[/] Updated {result.updated_deals} deals "
            f"({result.arr_property}={_format_amount(result.arr_total)}, "
            f"{result.carr_property}={_format_amount(result.carr_total)})"
        )
    sys.exit(EXIT_CODE_OK)


@app.command("monthly-summary")
def monthly_summary(
    as_of: Optional[str] = typer.Option(
        None, "--as-of", help="Summarize the month before this day (default: today)"
    ),
):
    """Summarize booked and contracted ARR for the previous month."""
    settings = get_settings()
    try:
        now = parse_date(as_of) if as_of else datetime.now()
        if now is None:
            raise InputValidationError(f"Invalid as-of date: {as_of!r}")
        summary = build_monthly_summary(build_report_service(settings), now)
    except Exception as e:
        _fail(e)
        return

    console.print(f"\n[bold]{summary.message}[/bold]")
    for title, breakdown in (("ARR", summary.arr_rows), ("C-ARR", summary.carr_rows)):
        table = Table(title=f"{title} by deal, {summary.window.period_label}")
        table.add_column("Deal ID")
        table.add_column("Deal")
        table.add_column(title, justify="right")
        for row in breakdown:
            table.add_row(row.deal_id, row.deal_name, _format_amount(row.value))
        console.print(table)
    sys.exit(EXIT_CODE_OK)


def _format_amount(amount: float) -> str:
    return f"{amount:,.2f}"


def _format_instant(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _display_report(result: Report, title: str, show_rows: bool) -> None:
    """Display per-period totals, optionally followed by the rows."""
    table = Table(title=title)
    table.add_column("Period")
    table.add_column("Total", justify="right")
    for total in result.totals_by_period:
        table.add_row(total.label, _format_amount(total.total))
    console.print(table)
    console.print(f"{len(result.rows)} line items")

    if not show_rows or not result.rows:
        return

    rows_table = Table(title="Line items")
    rows_table.add_column("Deal")
    rows_table.add_column("Line item")
    rows_table.add_column("Window")
    rows_table.add_column("Annualized", justify="right")
    for period in result.periods:
        rows_table.add_column(period.label, justify="right")
    for row in result.rows:
        rows_table.add_row(
            row.deal_name or row.deal_id,
            row.line_item_id,
            f"{row.window_start} .. {row.window_end}",
            _format_amount(row.annualized_value),
            *(_format_amount(row.values_by_period.get(p.key, 0.0)) for p in result.periods),
        )
    console.print(rows_table)


if __name__ == "__main__":
    app()
