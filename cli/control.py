"""Daemon commands: run the control daemon and talk to a running one over HTTP."""

from __future__ import annotations

from typing import Any, Dict, Optional

import click
import requests
from rich.console import Console
from rich.table import Table

from config import Config
from daemon.server import run_daemon
from utils.helpers import format_timestamp

_REQUEST_TIMEOUT = 10


def _daemon_url(config: Config, port: Optional[int], path: str) -> str:
    return f"http://127.0.0.1:{port or config.daemon_port}{path}"


def _render_jobs(console: Console, jobs: list, title: str) -> None:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Command")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Error", style="red")
    for job in jobs:
        table.add_row(
            str(job.get("id", "")),
            str(job.get("command", "")),
            str(job.get("status", "")),
            format_timestamp(int(job.get("started_at") or 0)),
            str(job.get("error") or ""),
        )
    console.print(table)


def register(cli_group: click.Group, *, console: Console) -> None:
    """Register 'daemon', 'server status' and 'jobs list|kill'."""

    def _get(ctx: click.Context, port: Optional[int], path: str,
             params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        config: Config = ctx.obj["config"]
        url = _daemon_url(config, port, path)
        try:
            response = requests.get(url, params=params, timeout=_REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as exc:
            console.print(f"[red]❌ Daemon not reachable at {url}: {exc}[/red]")
            ctx.exit(1)
        if response.status_code >= 400:
            console.print(f"[red]❌ Daemon returned {response.status_code}: {response.text.strip()}[/red]")
            ctx.exit(1)
        return response.json()

    port_option = click.option("--port", type=int, default=None, help="Daemon port (default DAEMON_PORT or 40000).")

    @cli_group.command(name="daemon")
    @port_option
    @click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
    @click.pass_context
    def daemon(ctx: click.Context, port: Optional[int], host: str) -> None:  # type: ignore[unused-ignore]
        """Start the control daemon (HTTP job interface)."""
        config: Config = ctx.obj["config"]
        console.print(f"[blue]ℹ️  Starting daemon on {host}:{port or config.daemon_port}[/blue]")
        run_daemon(config, port=port, host=host)

    @cli_group.group(name="server")
    def server() -> None:  # type: ignore[unused-ignore]
        """Query a running daemon."""

    @server.command(name="status")
    @port_option
    @click.pass_context
    def server_status(ctx: click.Context, port: Optional[int]) -> None:  # type: ignore[unused-ignore]
        """Show daemon status and active jobs."""
        payload = _get(ctx, port, "/status")
        console.print(f"[green]Daemon status:[/green] {payload.get('status')} at {payload.get('timestamp')}")
        _render_jobs(console, payload.get("jobs") or [], "Daemon Jobs")

    @cli_group.group(name="jobs")
    def jobs() -> None:  # type: ignore[unused-ignore]
        """Manage daemon jobs."""

    @jobs.command(name="list")
    @port_option
    @click.pass_context
    def jobs_list(ctx: click.Context, port: Optional[int]) -> None:  # type: ignore[unused-ignore]
        """List active daemon jobs."""
        payload = _get(ctx, port, "/status")
        active = [job for job in payload.get("jobs") or [] if job.get("status") in ("running", "stopping")]
        if not active:
            console.print("[yellow]No active jobs.[/yellow]")
            return
        _render_jobs(console, active, "Active Jobs")

    @jobs.command(name="kill")
    @click.argument("job_id")
    @port_option
    @click.pass_context
    def jobs_kill(ctx: click.Context, job_id: str, port: Optional[int]) -> None:  # type: ignore[unused-ignore]
        """Ask the daemon to stop processing a job."""
        payload = _get(ctx, port, "/jobs/kill", params={"id": job_id})
        console.print(f"[yellow]Job {payload.get('id', job_id)} is {payload.get('status', 'stopping')}[/yellow]")
