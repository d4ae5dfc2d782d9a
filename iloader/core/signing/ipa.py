"""
IPA container handling.

Unpacks an IPA into a scratch directory, locates its app bundle, and
zips the signed Payload back up. An IPA is a ZIP archive laid out as:

    Payload/
        AppName.app/
            (app contents)
    iTunesMetadata.plist (optional)
"""

from __future__ import annotations

import logging
import os
import plistlib
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Optional
from xml.parsers.expat import ExpatError

from iloader.constants import INFO_PLIST, PAYLOAD_DIR
from iloader.core.signing.manifest import verify_manifest
from iloader.exceptions import (
    ExtractionFailedError,
    PermissionDeniedError,
    RepackageFailedError,
)

logger = logging.getLogger(__name__)


def _is_safe_member(name: str) -> bool:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or (path.parts and ":" in path.parts[0]):
        return False
    return ".." not in path.parts


def extract_ipa(ipa_path: Path, dest_dir: Path) -> Path:
    """
    Extract an IPA and return its single app bundle.

    Args:
        ipa_path: IPA file.
        dest_dir: Empty scratch directory to extract into.

    Returns:
        Path of the Payload/*.app directory.

    Raises:
        ExtractionFailedError: If the archive is invalid, has a member
            escaping the destination, or does not hold exactly one app.
        PermissionDeniedError: If the IPA cannot be read.
    """
    try:
        with zipfile.ZipFile(ipa_path) as zf:
            for member in zf.infolist():
                if not _is_safe_member(member.filename):
                    raise ExtractionFailedError("archive member escapes the bundle")
            zf.extractall(dest_dir)
    except zipfile.BadZipFile as e:
        raise ExtractionFailedError("not a valid IPA archive") from e
    except PermissionError as e:
        raise PermissionDeniedError(ipa_path.name) from e
    except OSError as e:
        raise ExtractionFailedError("archive could not be read") from e

    return find_app_bundle(dest_dir)


def find_app_bundle(root: Path) -> Path:
    """
    Locate the single Payload/*.app directory.

    Raises:
        ExtractionFailedError: If there are zero or several app bundles.
    """
    payload = root / PAYLOAD_DIR
    apps = sorted(p for p in payload.glob("*.app") if p.is_dir()) if payload.is_dir() else []
    if not apps:
        raise ExtractionFailedError("no app bundle in Payload")
    if len(apps) > 1:
        raise ExtractionFailedError(f"{len(apps)} app bundles in Payload, expected one")
    logger.debug(f"Found app bundle {apps[0].name}")
    return apps[0]


def read_info_plist(bundle_dir: Path) -> dict[str, Any]:
    """
    Load a bundle's Info.plist.

    Raises:
        ExtractionFailedError: If it is missing or unreadable.
    """
    info_path = bundle_dir / INFO_PLIST
    try:
        with open(info_path, "rb") as f:
            info = plistlib.load(f)
    except FileNotFoundError as e:
        raise ExtractionFailedError(f"{bundle_dir.name} has no Info.plist") from e
    except (ValueError, ExpatError, OSError) as e:
        raise ExtractionFailedError(f"{bundle_dir.name} has an unreadable Info.plist") from e
    if not isinstance(info, dict):
        raise ExtractionFailedError(f"{bundle_dir.name} has an invalid Info.plist")
    return info


def write_info_plist(bundle_dir: Path, info: dict[str, Any]) -> None:
    """Write Info.plist back in binary form, as shipped in built apps."""
    with open(bundle_dir / INFO_PLIST, "wb") as f:
        plistlib.dump(info, f, fmt=plistlib.FMT_BINARY)


def executable_name(info: dict[str, Any]) -> Optional[str]:
    name = info.get("CFBundleExecutable")
    return name if isinstance(name, str) and name else None


def create_ipa(payload_dir: Path, output_path: Path) -> None:
    """
    Zip a Payload directory into an IPA.

    Members are written in sorted order so equal trees give equal listings.

    Raises:
        RepackageFailedError: If the Payload is missing or empty, or the
            archive comes out empty.
    """
    if not payload_dir.is_dir():
        raise RepackageFailedError("Payload directory is missing")

    files = sorted(p for p in payload_dir.rglob("*") if p.is_file() and not p.is_symlink())
    if not files:
        raise RepackageFailedError("Payload directory is empty")

    try:
        with zipfile.ZipFile(output_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for file_path in files:
                # Archive name is relative to the parent of Payload
                arcname = file_path.relative_to(payload_dir.parent).as_posix()
                zf.write(file_path, arcname)
    except OSError as e:
        raise RepackageFailedError("archive could not be written") from e

    if not output_path.is_file() or output_path.stat().st_size == 0:
        raise RepackageFailedError("archive is empty")
    logger.debug(f"Packed {len(files)} files")


def publish(source: Path, output_path: Path) -> Path:
    """
    Move a finished IPA to its final path, replacing any previous file.

    The file is first copied next to the destination and then renamed,
    so the final path never holds a partial file.

    Raises:
        PermissionDeniedError: If the output location is not writable.
    """
    output_path = Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{output_path.stem}-", suffix=".tmp", dir=output_path.parent
        )
    except OSError as e:
        raise PermissionDeniedError(output_path.parent.name or "output directory") from e

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
            for chunk in iter(lambda: src.read(1024 * 1024), b""):
                out.write(chunk)
        os.replace(tmp_path, output_path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise PermissionDeniedError(output_path.name) from e
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info(f"Created IPA: {output_path}")
    return output_path


def read_ipa_info(ipa_path: Path) -> dict[str, Any]:
    """
    Read the app's Info.plist straight from the archive.

    Also checks every member's CRC, so a truncated or corrupted download
    is caught before any work is done.

    Raises:
        ExtractionFailedError: If the archive is invalid or does not hold
            exactly one app bundle with an Info.plist.
        PermissionDeniedError: If the IPA cannot be read.
    """
    try:
        with zipfile.ZipFile(ipa_path) as zf:
            if zf.testzip() is not None:
                raise ExtractionFailedError("archive is corrupted")

            apps = set()
            for name in zf.namelist():
                parts = PurePosixPath(name).parts
                if len(parts) >= 2 and parts[0] == PAYLOAD_DIR and parts[1].endswith(".app"):
                    apps.add(parts[1])
            if not apps:
                raise ExtractionFailedError("no app bundle in Payload")
            if len(apps) > 1:
                raise ExtractionFailedError(f"{len(apps)} app bundles in Payload, expected one")

            app = apps.pop()
            data = zf.read(f"{PAYLOAD_DIR}/{app}/{INFO_PLIST}")
    except KeyError as e:
        raise ExtractionFailedError("app bundle has no Info.plist") from e
    except zipfile.BadZipFile as e:
        raise ExtractionFailedError("not a valid IPA archive") from e
    except PermissionError as e:
        raise PermissionDeniedError(Path(ipa_path).name) from e
    except OSError as e:
        raise ExtractionFailedError("archive could not be read") from e

    try:
        info = plistlib.loads(data)
    except (ValueError, ExpatError) as e:
        raise ExtractionFailedError(f"{app} has an unreadable Info.plist") from e
    if not isinstance(info, dict):
        raise ExtractionFailedError(f"{app} has an invalid Info.plist")
    return info


def verify_ipa(ipa_path: Path, work_dir: Optional[Path] = None) -> list[str]:
    """
    Check a signed IPA's resource seal.

    Returns:
        Bundle-relative paths whose contents do not match the manifest.

    Raises:
        ExtractionFailedError: If the IPA cannot be unpacked or the app
            has no resource manifest.
    """
    with tempfile.TemporaryDirectory(prefix="iloader_verify_", dir=work_dir) as tmp:
        app_dir = extract_ipa(Path(ipa_path), Path(tmp))
        try:
            return verify_manifest(app_dir)
        except FileNotFoundError as e:
            raise ExtractionFailedError(f"{app_dir.name} has no resource manifest") from e
