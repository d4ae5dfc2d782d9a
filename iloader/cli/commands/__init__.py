"""
CLI command groups and their shared helpers.
"""

from __future__ import annotations

import click
from rich.console import Console

from iloader.core.service import IloaderService


def get_console(ctx: click.Context) -> Console:
    """Get console from context or create new one."""
    if ctx.obj and "console" in ctx.obj:
        return ctx.obj["console"]
    return Console()


def get_service(ctx: click.Context) -> IloaderService:
    """Get the service from context, building it on first use."""
    ctx.ensure_object(dict)
    if "service" not in ctx.obj:
        ctx.obj["service"] = IloaderService.create(ctx.obj.get("config"))
    return ctx.obj["service"]


def fail(console: Console, error: Exception) -> None:
    """Print an error and exit with status 1."""
    message = getattr(error, "user_message", None) or str(error)
    console.print(f"[red]Error:[/red] {message}")
    raise SystemExit(1)
