"""
CLI commands for Apple ID accounts.

This module provides commands for signing in, listing stored
accounts, switching the active account and removing accounts.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import click
from rich.table import Table

from iloader.cli.commands import fail, get_console, get_service
from iloader.core.auth import TwoFactorRequired
from iloader.exceptions import IloaderError

logger = logging.getLogger(__name__)


@click.group()
def account() -> None:
    """
    Manage Apple ID accounts.

    Examples:

        Sign in:
        $ iloader account login user@example.com

        List stored accounts:
        $ iloader account list

        Switch account:
        $ iloader account switch other@example.com
    """
    pass


@account.command("login")
@click.argument("identifier")
@click.option(
    "--password", "-p",
    envvar="ILOADER_PASSWORD",
    help="Apple ID password (prompted if omitted).",
)
@click.option("--code", help="Two-factor code (prompted if required and omitted).")
@click.option("--anisette-server", help="Anisette server to use for this sign-in.")
@click.pass_context
def login_cmd(
    ctx: click.Context,
    identifier: str,
    password: Optional[str],
    code: Optional[str],
    anisette_server: Optional[str],
) -> None:
    """
    Sign in with an Apple ID.

    The session token is kept in the system keyring; the password is
    never stored.

    Examples:

        $ iloader account login user@example.com
        $ iloader account login user@example.com --code 123456
    """
    console = get_console(ctx)
    service = get_service(ctx)

    if password is None:
        password = click.prompt("Password", hide_input=True)

    try:
        with console.status("[bold blue]Signing in..."):
            result = service.start_login(identifier, password, anisette_server)

        if isinstance(result, TwoFactorRequired):
            console.print("[yellow]A verification code was sent to your trusted devices.[/yellow]")
            if code is None:
                try:
                    code = click.prompt("Two-factor code")
                except click.Abort:
                    service.cancel_login(result)
                    raise
            with console.status("[bold blue]Verifying code..."):
                result = service.complete_two_factor(result, code.strip())

        console.print(f"[green]✓ Signed in as {result.identifier}[/green]")

    except IloaderError as e:
        fail(console, e)


@account.command("verify")
@click.pass_context
def verify_cmd(ctx: click.Context) -> None:
    """
    Check that the active account's session still works.

    Lists the account's development teams with the stored session.
    """
    console = get_console(ctx)
    service = get_service(ctx)

    try:
        with console.status("[bold blue]Checking session..."):
            teams = service.list_teams()

        active = service.active_account
        console.print(f"[green]✓ Session for {active.identifier} is valid[/green]")
        for team in teams:
            console.print(f"  Team: [cyan]{team.name}[/cyan] ({team.id}, {team.type})")

    except IloaderError as e:
        fail(console, e)


@account.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List stored accounts."""
    console = get_console(ctx)
    service = get_service(ctx)

    try:
        accounts = service.list_accounts()
        active = service.active_account
    except IloaderError as e:
        fail(console, e)
        return

    active_id = active.identifier if active else None

    if as_json:
        console.print(json.dumps(
            [
                {**a.to_dict(), "active": a.identifier == active_id}
                for a in accounts
            ],
            indent=2,
        ))
        return

    if not accounts:
        console.print("[dim]No accounts. Use 'iloader account login' to sign in.[/dim]")
        return

    table = Table(title="Apple ID Accounts")
    table.add_column("", width=1)
    table.add_column("Apple ID", style="cyan")
    table.add_column("Added", style="dim")

    for a in accounts:
        table.add_row(
            "[green]*[/green]" if a.identifier == active_id else "",
            a.identifier,
            a.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@account.command("switch")
@click.argument("identifier")
@click.pass_context
def switch_cmd(ctx: click.Context, identifier: str) -> None:
    """Make a stored account the active one."""
    console = get_console(ctx)

    try:
        get_service(ctx).switch_account(identifier)
        console.print(f"[green]✓ Active account: {identifier}[/green]")
    except IloaderError as e:
        fail(console, e)


@account.command("remove")
@click.argument("identifier")
@click.option(
    "--yes", "-y",
    is_flag=True,
    help="Skip confirmation prompt.",
)
@click.pass_context
def remove_cmd(ctx: click.Context, identifier: str, yes: bool) -> None:
    """Remove an account and its stored keys."""
    console = get_console(ctx)

    if not yes:
        if not click.confirm(f"Remove {identifier} and its signing keys?"):
            console.print("Cancelled.")
            return

    try:
        get_service(ctx).remove_account(identifier)
        console.print(f"[green]✓ Removed {identifier}[/green]")
    except IloaderError as e:
        fail(console, e)
