#!/usr/bin/env python3
"""
candlefill - Coinbase candle backfill CLI
Fills a local SQLite store with historical OHLCV candles, gap by gap

Updates: v0.1.0 - 2026-08-18 - Initial data fetch and product sync commands.
Updates: v0.2.0 - 2026-09-02 - Added history sweep, migrations, wallet and daemon commands.
"""

import logging
import sqlite3
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from cli import control as control_commands
from cli import data as data_commands
from cli import migrate as migrate_commands
from cli import wallet as wallet_commands
from config import Config, ConfigurationError
from storage import migrations
from utils.logger import setup_logging

console = Console()
logger = logging.getLogger(__name__)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Config file (.env, .ini or .json). Defaults to CRYPTO_CONFIG_FILE or ~/.config/candlefill/.")
@click.option("--coinbase-creds", "creds_path", type=click.Path(dir_okay=False), default=None,
              help='Coinbase credentials JSON ({"name": ..., "privateKey": ...}).')
@click.option("--verbose", "-v", is_flag=True, help="Verbose (DEBUG) logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], creds_path: Optional[str], verbose: bool) -> None:
    """candlefill - backfill Coinbase candles into a local database"""
    ctx.ensure_object(dict)
    config = ctx.obj.get("config")
    if config is None:
        try:
            config = Config(config_path=config_path, creds_path=creds_path)
        except ConfigurationError as exc:
            console.print(f"[red]❌ {exc}[/red]")
            ctx.exit(1)
        ctx.obj["config"] = config

    setup_logging(log_level=config.log_level, verbose=verbose)
    logger.debug("Using database %s", config.database_path)


data_commands.register(cli, console=console)
wallet_commands.register(cli, console=console)
migrate_commands.register(cli, console=console)
control_commands.register(cli, console=console)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration and database status."""
    config: Config = ctx.obj["config"]

    if config.uses_jwt():
        auth_mode = "Bearer (JWT)"
    elif config.uses_hmac():
        auth_mode = "HMAC API key"
    else:
        auth_mode = "[yellow]None (public endpoints only)[/yellow]"

    try:
        version = migrations.current_version(config.database_path)
        schema = f"v{version} of v{migrations.LATEST_VERSION}"
    except sqlite3.Error as exc:
        schema = f"[red]unavailable: {exc}[/red]"

    table = Table(title="candlefill status", show_lines=False, expand=False)
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Config file", str(config.config_file or "-"))
    table.add_row("Database", str(config.database_path))
    table.add_row("Schema", schema)
    table.add_row("API URL", config.get_api_url())
    table.add_row("Auth", auth_mode)
    table.add_row("Rate limit", f"{config.rpm} req/min" if config.rpm > 0 else "disabled")
    table.add_row("Retries", f"{config.get_retry_attempts()} (base backoff {config.backoff_ms} ms)")
    table.add_row("Gap workers", str(config.get_gap_workers()))
    table.add_row("Daemon port", str(config.daemon_port))
    console.print(table)


if __name__ == '__main__':
    cli()
