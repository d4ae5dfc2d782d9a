"""
CLI commands for development certificates.
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
def certs() -> None:
    """
    Manage development certificates.

    Free accounts may hold only a few certificates at once; revoke an
    old one when the limit is reached.

    Examples:

        $ iloader certs list
        $ iloader certs revoke 1A2B3C4D5E6F
    """
    pass


@certs.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List the team's development certificates."""
    console = get_console(ctx)

    try:
        with console.status("[bold blue]Loading certificates..."):
            certificates = get_service(ctx).list_certificates()
    except IloaderError as e:
        fail(console, e)
        return

    if as_json:
        console.print(json.dumps([c.to_dict() for c in certificates], indent=2))
        return

    if not certificates:
        console.print("[dim]No development certificates.[/dim]")
        return

    table = Table(title="Development Certificates")
    table.add_column("Name", style="cyan")
    table.add_column("Serial Number")
    table.add_column("Machine", style="dim")
    table.add_column("Expires", justify="right")

    for c in certificates:
        table.add_row(
            c.name,
            c.serial_number,
            c.machine_name or "-",
            c.expiration.strftime("%Y-%m-%d") if c.expiration else "-",
        )

    console.print(table)
    console.print(f"\n[dim]{len(certificates)} certificate(s)[/dim]")


@certs.command("revoke")
@click.argument("serial_number")
@click.option(
    "--yes", "-y",
    is_flag=True,
    help="Skip confirmation prompt.",
)
@click.pass_context
def revoke_cmd(ctx: click.Context, serial_number: str, yes: bool) -> None:
    """
    Revoke a certificate.

    Apps signed with it stop launching once the device notices.
    """
    console = get_console(ctx)

    if not yes:
        if not click.confirm(f"Revoke certificate {serial_number}?"):
            console.print("Cancelled.")
            return

    try:
        with console.status("[bold blue]Revoking certificate..."):
            get_service(ctx).revoke_certificate(serial_number)
        console.print(f"[green]✓ Revoked {serial_number}[/green]")
    except IloaderError as e:
        fail(console, e)
