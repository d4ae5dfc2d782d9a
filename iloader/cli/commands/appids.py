"""
CLI commands for App IDs.
"""

from __future__ import annotations

import json
import logging

import click
from rich.table import Table

from iloader.cli.commands import fail, get_console, get_service
from iloader.exceptions import IloaderError

logger = logging.getLogger(__name__)


@click.group()
def appids() -> None:
    """
    Manage App IDs.

    Examples:

        $ iloader appids list
        $ iloader appids delete ABCDE12345
    """
    pass


@appids.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List the team's App IDs and the remaining quota."""
    console = get_console(ctx)

    try:
        with console.status("[bold blue]Loading App IDs..."):
            listing = get_service(ctx).list_app_ids()
    except IloaderError as e:
        fail(console, e)
        return

    if as_json:
        console.print(json.dumps(
            {
                "app_ids": [a.to_dict() for a in listing.app_ids],
                "max_quantity": listing.max_quantity,
                "available_quantity": listing.available_quantity,
            },
            indent=2,
        ))
        return

    if not listing.app_ids:
        console.print("[dim]No App IDs.[/dim]")
    else:
        table = Table(title="App IDs")
        table.add_column("Name", style="cyan")
        table.add_column("Identifier")
        table.add_column("ID", style="dim")
        table.add_column("Expires", justify="right")

        for a in listing.app_ids:
            table.add_row(
                a.name,
                a.identifier,
                a.id,
                a.expiration.strftime("%Y-%m-%d") if a.expiration else "-",
            )
        console.print(table)

    if listing.available_quantity is not None:
        console.print(
            f"\n[dim]{listing.available_quantity} of {listing.max_quantity} App ID(s) available[/dim]"
        )


@appids.command("delete")
@click.argument("app_id")
@click.option(
    "--yes", "-y",
    is_flag=True,
    help="Skip confirmation prompt.",
)
@click.pass_context
def delete_cmd(ctx: click.Context, app_id: str, yes: bool) -> None:
    """
    Delete an App ID.

    Only allowed when policy.allow_app_id_deletion is enabled in the
    config (or ILOADER_ALLOW_APP_ID_DELETION=true).
    """
    console = get_console(ctx)

    if not yes:
        if not click.confirm(f"Delete App ID {app_id}?"):
            console.print("Cancelled.")
            return

    try:
        get_service(ctx).delete_app_id(app_id)
        console.print(f"[green]✓ Deleted App ID {app_id}[/green]")
    except IloaderError as e:
        fail(console, e)
