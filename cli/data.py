"""Data operations CLI for candlefill.

Backfills Coinbase candles into the local SQLite store, sweeps every product
day by day, syncs product metadata and reports gaps.

Updates:
    v0.1.0 - 2026-08-18 - Added 'data fetch' and 'data sync-products'.
    v0.2.0 - 2026-09-02 - Added 'data history' sweep and 'data gaps' report.
    v0.2.1 - 2026-10-19 - Report setup errors and Ctrl-C on fetch as readable failures.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from api.coinbase_client import CoinbaseAPIError
from backfill.gaps import GapAnalyzer
from backfill.scheduler import BackfillCancelled, BackfillError, BatchReport
from backfill.service import BackfillService, SweepFailure
from config import Config, ConfigurationError
from storage.candle_store import CandleStore, StoreError
from utils.helpers import format_duration, format_timestamp, parse_time_input
from utils.market_data import SUPPORTED_GRANULARITIES

logger = logging.getLogger(__name__)

_GRANULARITY_CHOICE = click.Choice(list(SUPPORTED_GRANULARITIES), case_sensitive=False)

# Errors that end a command with a readable message and a non-zero exit code.
_COMMAND_ERRORS = (ConfigurationError, BackfillError, CoinbaseAPIError, StoreError)


def _parse_time_argument(value: Optional[str], label: str) -> Optional[int]:
    """Parse a CLI time argument, raising click.BadParameter on bad input."""
    try:
        return parse_time_input(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint=label) from exc


def _fail(ctx: click.Context, console: Console, message: str) -> None:
    console.print(f"[red]❌ {message}[/red]")
    ctx.exit(1)


def _batch_printer(console: Console):
    """Return an ``on_batch`` callback printing one progress line per batch."""
    counter: Dict[str, int] = {}

    def _print(report: BatchReport) -> None:
        counter[report.product_id] = counter.get(report.product_id, 0) + 1
        console.print(
            f"  [cyan][{report.product_id}][/cyan] Batch {counter[report.product_id]}: "
            f"[{format_timestamp(report.start)} - {format_timestamp(report.end)}] "
            f"fetched {report.fetched}, inserted [green]{report.inserted}[/green], "
            f"marked empty {report.marked}"
            + (f", [yellow]{report.mark_failures} mark failures[/yellow]" if report.mark_failures else "")
        )

    return _print


def _build_service(ctx: click.Context, console: Console) -> BackfillService:
    config: Config = ctx.obj["config"]
    return BackfillService.from_config(config, on_batch=_batch_printer(console))


def register(
    cli_group: click.Group,
    *,
    console: Console,
) -> None:
    """Register the 'data' CLI group.

    Exposes:
        data fetch          - Backfill one product, filling any gaps.
        data history        - Sweep all known products day by day.
        data sync-products  - Refresh product metadata from Coinbase.
        data gaps           - Report unresolved buckets in a window.
    """

    @cli_group.group(name="data")
    @click.pass_context
    def data(ctx: click.Context) -> None:  # type: ignore[unused-ignore]
        """Candle data operations (fetch/history/sync)."""
        # no-op group initializer

    @data.command(name="fetch")
    @click.option("--product", "-p", required=True, help="Product id (e.g., BTC-USD)")
    @click.option(
        "--granularity",
        "-g",
        type=_GRANULARITY_CHOICE,
        default="1h",
        show_default=True,
        help="Candle granularity.",
    )
    @click.argument("start", required=False)
    @click.argument("end", required=False)
    @click.pass_context
    def fetch(  # type: ignore[unused-ignore]
        ctx: click.Context,
        product: str,
        granularity: str,
        start: Optional[str],
        end: Optional[str],
    ) -> None:
        """Fetch historical candles for one product, filling any gaps.

        START defaults to the product's listing time and END to now. Both
        accept epoch seconds, YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS or RFC3339.

        Examples:
            candlefill data fetch -p BTC-USD -g 1h 2024-01-01 2024-02-01

            candlefill data fetch -p ETH-USD -g 1m
        """
        start_ts = _parse_time_argument(start, "START")
        end_ts = _parse_time_argument(end, "END")
        product_id = product.strip().upper()

        service: Optional[BackfillService] = None
        cancel_event = threading.Event()
        started = time.monotonic()
        try:
            service = _build_service(ctx, console)
            console.print(f"[blue]ℹ️  Backfilling {product_id} ({granularity})[/blue]")
            result = service.fetch(product_id, granularity, start_ts, end_ts, cancel_event=cancel_event)
        except KeyboardInterrupt:
            cancel_event.set()
            _fail(ctx, console, "Backfill interrupted")
        except BackfillCancelled:
            _fail(ctx, console, "Backfill cancelled")
        except _COMMAND_ERRORS as exc:
            _fail(ctx, console, str(exc))
        else:
            table = Table(title=f"Backfill Summary - {product_id} {granularity}")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="white")
            table.add_row("Window", f"{format_timestamp(result.start)} → {format_timestamp(result.end)}")
            table.add_row("Batches", str(result.batches))
            table.add_row("Candles fetched", str(result.fetched))
            table.add_row("Candles inserted", str(result.inserted))
            table.add_row("Buckets marked empty", str(result.marked))
            table.add_row("Mark failures", str(result.mark_failures))
            table.add_row("Elapsed", format_duration(time.monotonic() - started))
            console.print(table)
            console.print(f"[green]✅ Fetch complete. Inserted {result.inserted} new candles.[/green]")
        finally:
            if service is not None:
                service.close()

    @data.command(name="history")
    @click.option(
        "--granularity",
        "-g",
        type=_GRANULARITY_CHOICE,
        default="1m",
        show_default=True,
        help="Candle granularity for the sweep.",
    )
    @click.pass_context
    def history(ctx: click.Context, granularity: str) -> None:  # type: ignore[unused-ignore]
        """Sweep every known product day by day, newest day first.

        Products come from the local store; run 'data sync-products' first.
        A failing product is reported and the sweep continues.
        """
        def _on_failure(failure: SweepFailure) -> None:
            console.print(
                f"[yellow]⚠️  {failure.product_id} on {format_timestamp(failure.day_start)}: {failure.error}[/yellow]"
            )

        service: Optional[BackfillService] = None
        cancel_event = threading.Event()
        started = time.monotonic()
        try:
            service = _build_service(ctx, console)
            result = service.history(granularity=granularity, cancel_event=cancel_event, on_failure=_on_failure)
        except KeyboardInterrupt:
            cancel_event.set()
            _fail(ctx, console, "History sweep interrupted")
        except BackfillCancelled:
            _fail(ctx, console, "History sweep cancelled")
        except _COMMAND_ERRORS as exc:
            _fail(ctx, console, str(exc))
        else:
            summary = (
                f"[bold]Days:[/bold] {result.days}\n"
                f"[bold]Windows:[/bold] {result.windows}\n"
                f"[bold]Batches:[/bold] {result.batches}\n"
                f"[bold]Inserted:[/bold] {result.inserted}\n"
                f"[bold]Marked empty:[/bold] {result.marked}\n"
                f"[bold]Failures:[/bold] {len(result.failures)}\n"
                f"[bold]Elapsed:[/bold] {format_duration(time.monotonic() - started)}"
            )
            console.print(Panel(summary, title=f"History Sweep ({granularity})"))
            if result.failures:
                console.print("[yellow]⚠️  Some products failed; re-run to retry them.[/yellow]")
        finally:
            if service is not None:
                service.close()

    @data.command(name="sync-products")
    @click.pass_context
    def sync_products(ctx: click.Context) -> None:  # type: ignore[unused-ignore]
        """Sync all tradable products from Coinbase into the store."""
        service: Optional[BackfillService] = None
        try:
            service = _build_service(ctx, console)
            count = service.sync_products()
        except _COMMAND_ERRORS as exc:
            _fail(ctx, console, str(exc))
        else:
            console.print(f"[green]✅ Synced {count} products.[/green]")
        finally:
            if service is not None:
                service.close()

    @data.command(name="gaps")
    @click.option("--product", "-p", required=True, help="Product id (e.g., BTC-USD)")
    @click.option("--granularity", "-g", type=_GRANULARITY_CHOICE, default="1h", show_default=True)
    @click.option(
        "--output",
        "-o",
        type=click.Choice(["table", "json"], case_sensitive=False),
        default="table",
        show_default=True,
        help="Output format.",
    )
    @click.option("--limit", type=click.IntRange(1, 10000), default=50, show_default=True,
                  help="Maximum gap rows in table output.")
    @click.argument("start")
    @click.argument("end", required=False)
    @click.pass_context
    def gaps(  # type: ignore[unused-ignore]
        ctx: click.Context,
        product: str,
        granularity: str,
        output: str,
        limit: int,
        start: str,
        end: Optional[str],
    ) -> None:
        """Report unresolved buckets for a product in [START, END) (END defaults to now)."""
        config: Config = ctx.obj["config"]
        start_ts = _parse_time_argument(start, "START")
        end_ts = _parse_time_argument(end, "END") or int(time.time())
        product_id = product.strip().upper()
        if start_ts is None or end_ts <= start_ts:
            raise click.BadParameter("END must be after START", param_hint="END")

        try:
            analyzer = GapAnalyzer(CandleStore(config.database_path))
            gap_list, summary = analyzer.find_gaps(product_id, start_ts, end_ts, granularity)
        except StoreError as exc:
            _fail(ctx, console, str(exc))
            return

        if output.lower() == "json":
            payload: Dict[str, Any] = {
                "product": product_id,
                "granularity": granularity,
                "start": start_ts,
                "end": end_ts,
                "summary": summary.to_dict(),
                "gaps": [gap.to_dict() for gap in gap_list],
            }
            click.echo(json.dumps(payload, indent=2))
            return

        table = Table(title=f"Gaps - {product_id} {granularity}")
        table.add_column("Start", style="cyan")
        table.add_column("End (exclusive)", style="cyan")
        table.add_column("Missing", style="yellow", justify="right")
        for gap in gap_list[:limit]:
            table.add_row(format_timestamp(gap.start), format_timestamp(gap.end), str(gap.missing_count))
        console.print(table)
        if len(gap_list) > limit:
            console.print(f"[dim]... {len(gap_list) - limit} more gap(s) not shown[/dim]")
        console.print(
            f"Expected {summary.expected}, present {summary.present}, "
            f"marked empty {summary.sentinels}, missing {summary.missing} "
            f"(coverage {summary.coverage_ratio:.2%})"
        )
