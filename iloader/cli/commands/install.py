"""
CLI commands for installer operations and devices.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from iloader.cli.commands import fail, get_console, get_service
from iloader.core.device import list_devices
from iloader.core.operations import OperationKind, OperationSnapshot, OperationState, StepState
from iloader.exceptions import IloaderError

logger = logging.getLogger(__name__)

KINDS = {
    "sidestore": OperationKind.INSTALL_SIDESTORE,
    "livecontainer": OperationKind.INSTALL_LIVECONTAINER,
    "sideload": OperationKind.CUSTOM_SIDELOAD,
    "ipa": OperationKind.INSTALL_CUSTOM_IPA,
}

STEP_MARKS = {
    StepState.IN_PROGRESS: "[blue]…[/blue]",
    StepState.COMPLETED: "[green]✓[/green]",
    StepState.FAILED: "[red]✗[/red]",
    StepState.CANCELLED: "[yellow]-[/yellow]",
}


@click.command("install")
@click.argument("kind", type=click.Choice(list(KINDS)))
@click.argument(
    "ipa",
    required=False,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--udid", "-u", help="Device UDID (optional if single device).")
@click.option("--bundle-id", "-b", help="Bundle identifier to sign as.")
@click.option("--certificate", "-c", "certificate_id", help="Certificate id or serial number.")
@click.pass_context
def install(
    ctx: click.Context,
    kind: str,
    ipa: Optional[Path],
    udid: Optional[str],
    bundle_id: Optional[str],
    certificate_id: Optional[str],
) -> None:
    """
    Run an installer operation.

    sidestore and livecontainer download the latest release; sideload
    and ipa take an IPA file (ipa also verifies it before and after
    signing).

    Examples:

        $ iloader install sidestore
        $ iloader install ipa ./App.ipa --udid 00008030-001A2B3C4D5E6F
    """
    console = get_console(ctx)
    operation = KINDS[kind]

    if operation.needs_ipa and ipa is None:
        raise click.UsageError(f"'{kind}' needs an IPA file.")

    try:
        handle = get_service(ctx).start_operation(
            operation,
            ipa_path=ipa,
            udid=udid,
            bundle_id=bundle_id,
            certificate_id=certificate_id,
        )
    except IloaderError as e:
        fail(console, e)
        return

    shown: dict[int, StepState] = {}

    def on_update(snapshot: OperationSnapshot) -> None:
        for index, step in enumerate(snapshot.steps):
            mark = STEP_MARKS.get(step.state)
            if mark is None or shown.get(index) == step.state:
                continue
            shown[index] = step.state
            line = f"{mark} {step.title}"
            if step.reason:
                line += f" [dim]({step.reason})[/dim]"
            console.print(line)

    handle.subscribe(on_update)
    try:
        snapshot = handle.wait()
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling after the current step...[/yellow]")
        handle.cancel()
        snapshot = handle.wait()

    if snapshot.state == OperationState.COMPLETED:
        console.print(f"\n[green]✓ Operation completed[/green]")
        if snapshot.result:
            console.print(f"  Signed IPA: {snapshot.result}")
    elif snapshot.state == OperationState.CANCELLED:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        raise SystemExit(1)
    else:
        failed = snapshot.failed_step
        console.print(f"\n[red]✗ Failed at: {failed.title if failed else 'unknown step'}[/red]")
        raise SystemExit(1)


@click.command("devices")
@click.pass_context
def devices(ctx: click.Context) -> None:
    """List connected devices."""
    console = get_console(ctx)

    with console.status("[bold blue]Scanning for devices..."):
        found = list_devices()

    if not found:
        console.print("[dim]No devices found. Connect a device and trust this computer.[/dim]")
        return

    table = Table(title="Devices")
    table.add_column("Name", style="cyan")
    table.add_column("UDID")
    table.add_column("Connection", style="dim")

    for device in found:
        table.add_row(device.name, device.udid, device.connection_type)

    console.print(table)
