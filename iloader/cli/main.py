"""
Main CLI entry point for iloader.

This module defines the root CLI group and initializes the application.

Usage:
    iloader --help
    iloader account login user@example.com
    iloader sign App.ipa
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler

from iloader import __version__
from iloader.config import Config
from iloader.cli.commands import account, appids, certs, install, sign

# Rich console for pretty output
console = Console()


def setup_logging(verbose: bool, debug: bool) -> None:
    """Configure logging based on verbosity flags."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@click.group()
@click.version_option(version=__version__, prog_name="iloader")
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output.",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug output (more verbose than -v).",
)
@click.option(
    "--config",
    type=click.Path(exists=False),
    help="Path to config file.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    debug: bool,
    config: Optional[str],
) -> None:
    """
    iloader - Sideload iOS apps with your Apple ID.

    Sign in once, then sign and install IPAs with a free or paid
    developer account.

    Examples:

        Sign in:
        $ iloader account login user@example.com

        Sign and install an app:
        $ iloader sign App.ipa --install

        Install SideStore:
        $ iloader install sidestore
    """
    setup_logging(verbose, debug)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["console"] = console

    if "config" not in ctx.obj:
        ctx.obj["config"] = Config.load(Path(config) if config else None)


# Register command groups
cli.add_command(account.account)
cli.add_command(certs.certs)
cli.add_command(appids.appids)
cli.add_command(sign.sign)
cli.add_command(install.install)
cli.add_command(install.devices)


# Convenience aliases
@cli.command("login")
@click.argument("identifier")
@click.pass_context
def login(ctx: click.Context, identifier: str) -> None:
    """Alias for 'account login'."""
    ctx.invoke(account.login_cmd, identifier=identifier)


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if "--debug" in sys.argv:
            raise
        sys.exit(1)


if __name__ == "__main__":
    main()
