"""Database migration commands."""

from __future__ import annotations

import sqlite3

import click
from rich.console import Console
from rich.table import Table

from config import Config
from storage import migrations
from utils.helpers import format_timestamp


def register(cli_group: click.Group, *, console: Console) -> None:
    """Register the 'migrate' CLI group (status, up, down, reset)."""

    @cli_group.group(name="migrate")
    def migrate() -> None:  # type: ignore[unused-ignore]
        """Database migration commands."""

    def _db_path(ctx: click.Context):
        config: Config = ctx.obj["config"]
        return config.database_path

    def _handle(ctx: click.Context, exc: sqlite3.Error) -> None:
        console.print(f"[red]❌ Migration failed: {exc}[/red]")
        ctx.exit(1)

    @migrate.command(name="status")
    @click.pass_context
    def status(ctx: click.Context) -> None:  # type: ignore[unused-ignore]
        """Show migration status."""
        try:
            rows = migrations.status(_db_path(ctx))
        except sqlite3.Error as exc:
            _handle(ctx, exc)
            return

        table = Table(title=f"Migration status - {_db_path(ctx)}")
        table.add_column("Version", justify="right")
        table.add_column("Name", style="cyan")
        table.add_column("Applied At")
        for row in rows:
            applied = format_timestamp(row.applied_at) if row.applied_at else "[yellow]Pending[/yellow]"
            table.add_row(str(row.version), row.name, applied)
        console.print(table)

    @migrate.command(name="up")
    @click.pass_context
    def up(ctx: click.Context) -> None:  # type: ignore[unused-ignore]
        """Apply all pending migrations."""
        try:
            applied = migrations.upgrade(_db_path(ctx))
        except sqlite3.Error as exc:
            _handle(ctx, exc)
            return
        if not applied:
            console.print("[green]✅ Database already up to date.[/green]")
            return
        for migration in applied:
            console.print(f"[green]✅ Applied {migration.version:03d}_{migration.name}[/green]")

    @migrate.command(name="down")
    @click.option("--step", type=click.IntRange(1, None), default=1, show_default=True,
                  help="Number of migrations to roll back.")
    @click.pass_context
    def down(ctx: click.Context, step: int) -> None:  # type: ignore[unused-ignore]
        """Roll back migrations."""
        try:
            reverted = migrations.downgrade(_db_path(ctx), steps=step)
        except sqlite3.Error as exc:
            _handle(ctx, exc)
            return
        if not reverted:
            console.print("[yellow]⚠️  Nothing to roll back.[/yellow]")
        for migration in reverted:
            console.print(f"[yellow]↩️  Rolled back {migration.version:03d}_{migration.name}[/yellow]")

    @migrate.command(name="reset")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    @click.pass_context
    def reset(ctx: click.Context, yes: bool) -> None:  # type: ignore[unused-ignore]
        """Reset the database (down to 0, then up). Deletes all stored candles."""
        if not yes and not click.confirm("This drops every table. Continue?", default=False):
            console.print("[yellow]Aborted.[/yellow]")
            return
        try:
            applied = migrations.reset(_db_path(ctx))
        except sqlite3.Error as exc:
            _handle(ctx, exc)
            return
        console.print(f"[green]✅ Database reset; {len(applied)} migration(s) applied.[/green]")
