# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for mail-outbox.

Usage:
    mail-outbox serve                      # Run the HTTP service and delivery loop
    mail-outbox messages                   # List delivery records
    mail-outbox messages --status deleted  # Only given-up messages
    mail-outbox stats                      # Record counts per status

Every command reads the same INI file as the service (``--config`` or
``OUTBOX_CONFIG``).
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from mail_outbox.config_loader import load_service_settings
from mail_outbox.models import MailStatus
from mail_outbox.persistence import Persistence

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    MailStatus.IN_PROGRESS.value: "yellow",
    MailStatus.SENT.value: "green",
    MailStatus.DELETED.value: "red",
}


def get_persistence(db_path: str) -> Persistence:
    """Create a Persistence instance with the given database path."""
    return Persistence(db_path)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _persistence_from_context(ctx: click.Context) -> Persistence:
    try:
        settings = load_service_settings(ctx.obj.get("config_path"))
    except ValidationError as exc:
        print_error(f"Invalid configuration: {exc}")
        sys.exit(1)
    return get_persistence(settings.db_path)


@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    envvar="OUTBOX_CONFIG",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to the INI configuration file (default: config.ini).",
)
@click.version_option(package_name="mail-outbox")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """mail-outbox CLI - durable background e-mail delivery."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default from config).")
@click.option("--log-level", default=None, help="Logging level (default: OUTBOX_LOG_LEVEL or INFO).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], log_level: Optional[str]) -> None:
    """Run the HTTP API together with the delivery loop."""
    import uvicorn

    from mail_outbox.logger import configure_logging
    from mail_outbox.server import build_app

    configure_logging(log_level)
    config_path = ctx.obj.get("config_path")
    settings = load_service_settings(config_path)
    app = build_app(config_path)
    uvicorn.run(app, host=host or settings.http_host, port=port or settings.http_port)


@main.command("messages")
@click.option(
    "--status",
    "-s",
    "status_filter",
    type=click.Choice([s.value for s in MailStatus]),
    default=None,
    help="Only show records with this status.",
)
@click.option("--limit", "-n", type=int, default=50, show_default=True, help="Maximum records to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def messages(ctx: click.Context, status_filter: Optional[str], limit: int, as_json: bool) -> None:
    """List delivery records, newest first."""
    persistence = _persistence_from_context(ctx)

    async def _list():
        await persistence.init_db()
        status = MailStatus(status_filter) if status_filter else None
        return await persistence.list_messages(status=status, limit=limit)

    records = run_async(_list())

    if as_json:
        print_json([record.model_dump(mode="json") for record in records])
        return

    if not records:
        console.print("[dim]No messages found.[/dim]")
        return

    table = Table(title="Messages")
    table.add_column("ID", style="cyan")
    table.add_column("Recipient")
    table.add_column("Subject")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Last error")
    table.add_column("Updated")

    for record in records:
        style = STATUS_STYLES.get(record.status.value, "white")
        table.add_row(
            record.id,
            record.recipient,
            record.subject,
            f"[{style}]{record.status.value}[/{style}]",
            str(record.attempt_count),
            record.last_error or "-",
            record.updated_at or "-",
        )

    console.print(table)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show the number of delivery records per status."""
    persistence = _persistence_from_context(ctx)

    async def _count():
        await persistence.init_db()
        return await persistence.count_by_status()

    counts = run_async(_count())

    if as_json:
        print_json(counts)
        return

    table = Table(title="Delivery records")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in counts.items():
        style = STATUS_STYLES.get(status, "white")
        table.add_row(f"[{style}]{status}[/{style}]", str(count))
    table.add_row("[bold]total[/bold]", f"[bold]{sum(counts.values())}[/bold]")
    console.print(table)


if __name__ == "__main__":
    main()
