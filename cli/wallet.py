"""Wallet commands: show Coinbase account balances."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from api.coinbase_client import CoinbaseAPIClient, CoinbaseAPIError
from config import Config, ConfigurationError


def register(cli_group: click.Group, *, console: Console) -> None:
    """Register the 'wallet' CLI group."""

    @cli_group.group(name="wallet")
    def wallet() -> None:  # type: ignore[unused-ignore]
        """Wallet related commands for Coinbase."""

    @wallet.command(name="syncdown")
    @click.option("--show-empty", is_flag=True, help="Include accounts with zero balance.")
    @click.pass_context
    def syncdown(ctx: click.Context, show_empty: bool) -> None:  # type: ignore[unused-ignore]
        """Fetch and display account balances from Coinbase."""
        config: Config = ctx.obj["config"]
        if not config.has_credentials():
            console.print("[red]⚠️  API credentials not configured![/red]")
            console.print(
                "[yellow]Set COINBASE_API_KEY_NAME/COINBASE_API_PRIVATE_KEY or pass --coinbase-creds[/yellow]"
            )
            ctx.exit(1)

        try:
            accounts = CoinbaseAPIClient.from_config(config).list_accounts()
        except (CoinbaseAPIError, ConfigurationError) as exc:
            console.print(f"[red]❌ Failed to list accounts: {exc}[/red]")
            ctx.exit(1)
            return

        table = Table(title="Coinbase Accounts")
        table.add_column("UUID", style="dim")
        table.add_column("Currency", style="cyan")
        table.add_column("Available", style="green", justify="right")
        table.add_column("Hold", style="yellow", justify="right")

        shown = 0
        for account in accounts:
            if not show_empty and account.available_balance == 0 and account.hold == 0:
                continue
            table.add_row(account.uuid, account.currency, f"{account.available_balance:.8f}", f"{account.hold:.8f}")
            shown += 1

        console.print(table)
        hidden = len(accounts) - shown
        if hidden:
            console.print(f"[dim]{hidden} zero-balance account(s) hidden; use --show-empty to list them[/dim]")
