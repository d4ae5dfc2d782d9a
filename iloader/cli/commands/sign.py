"""
CLI command for signing IPAs.

Signs with the active Apple ID by default, or offline with a PKCS#12
identity and a provisioning profile.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from iloader.cli.commands import fail, get_console, get_service
from iloader.core.signing import P12IdentitySource, SigningProgress
from iloader.exceptions import IloaderError

logger = logging.getLogger(__name__)


@click.command("sign")
@click.argument("ipa", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output", "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Output IPA (default: <output_dir>/<name>-signed.ipa).",
)
@click.option("--bundle-id", "-b", help="Bundle identifier to sign as.")
@click.option("--certificate", "-c", "certificate_id", help="Certificate id or serial number.")
@click.option("--udid", "-u", help="Device to provision and install to.")
@click.option("--install", "do_install", is_flag=True, help="Install on the device after signing.")
@click.option(
    "--p12",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Sign offline with this PKCS#12 identity.",
)
@click.option("--p12-password", envvar="ILOADER_P12_PASSWORD", help="Passphrase of the P12.")
@click.option(
    "--profile",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Provisioning profile for offline signing.",
)
@click.pass_context
def sign(
    ctx: click.Context,
    ipa: Path,
    output: Optional[Path],
    bundle_id: Optional[str],
    certificate_id: Optional[str],
    udid: Optional[str],
    do_install: bool,
    p12: Optional[Path],
    p12_password: Optional[str],
    profile: Optional[Path],
) -> None:
    """
    Sign an IPA.

    With an Apple ID, the App ID is registered and a provisioning
    profile is fetched automatically. With --p12 and --profile no
    account is needed.

    Examples:

        $ iloader sign App.ipa
        $ iloader sign App.ipa --install --udid 00008030-001A2B3C4D5E6F
        $ iloader sign App.ipa --p12 dev.p12 --profile dev.mobileprovision -o out.ipa
    """
    console = get_console(ctx)
    service = get_service(ctx)

    if (p12 is None) != (profile is None):
        raise click.UsageError("--p12 and --profile must be given together.")

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Signing {ipa.name}...", total=1.0)

            def on_progress(p: SigningProgress) -> None:
                progress.update(task, completed=p.fraction, description=p.step)

            if p12 is not None:
                signed = service.engine.sign(
                    ipa,
                    output or service.config.output_dir / f"{ipa.stem}-signed.ipa",
                    P12IdentitySource(p12.read_bytes(), p12_password),
                    profile.read_bytes(),
                    bundle_id=bundle_id,
                    progress=on_progress,
                )
            else:
                signed = service.sign(
                    ipa,
                    output_path=output,
                    bundle_id=bundle_id,
                    certificate_id=certificate_id,
                    udid=udid,
                    progress=on_progress,
                )

        console.print(f"\n[green]✓ Signed:[/green] {signed}")

        if do_install:
            with console.status("[bold blue]Installing..."):
                service.install(signed, udid)
            console.print("[green]✓ Installed[/green]")

    except IloaderError as e:
        fail(console, e)
