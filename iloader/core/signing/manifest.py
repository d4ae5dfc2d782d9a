"""
Bundle resource manifest (_CodeSignature/CodeResources).

The manifest maps every bundle-relative regular file to its hashes:
``files`` holds the legacy SHA-1 digests, ``files2`` holds
``{"hash2": sha256}`` entries. It is always rebuilt from the files on
disk, never merged with a previous manifest.
"""

from __future__ import annotations

import hashlib
import logging
import os
import plistlib
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional
from xml.parsers.expat import ExpatError

from iloader.constants import CODE_RESOURCES_FILE, CODE_SIGNATURE_DIR, INFO_PLIST

logger = logging.getLogger(__name__)

RULES: dict[str, Any] = {
    "^.*": True,
    "^.*\\.lproj/": {"optional": True, "weight": 1000.0},
    "^.*\\.lproj/locversion.plist$": {"omit": True, "weight": 1100.0},
    "^Base\\.lproj/": {"weight": 1010.0},
    "^version.plist$": True,
}

RULES2: dict[str, Any] = {
    ".*\\.dSYM($|/)": {"weight": 11.0},
    "^(.*/)?\\.DS_Store$": {"omit": True, "weight": 2000.0},
    "^.*": True,
    "^.*\\.lproj/": {"optional": True, "weight": 1000.0},
    "^.*\\.lproj/locversion.plist$": {"omit": True, "weight": 1100.0},
    "^Base\\.lproj/": {"weight": 1010.0},
    "^embedded\\.provisionprofile$": {"weight": 20.0},
    "^version\\.plist$": {"weight": 20.0},
}

_CHUNK_SIZE = 1024 * 1024


def manifest_path(bundle_dir: Path) -> Path:
    return bundle_dir / CODE_SIGNATURE_DIR / CODE_RESOURCES_FILE


def iter_bundle_files(bundle_dir: Path, exclude: Iterable[str] = ()) -> Iterator[str]:
    """
    Yield bundle-relative paths (POSIX separators) of every regular file.

    The bundle's own top-level _CodeSignature directory is skipped;
    _CodeSignature directories of nested bundles are included.
    """
    excluded = set(exclude)
    for root, dirs, files in os.walk(bundle_dir):
        root_path = Path(root)
        if root_path == bundle_dir and CODE_SIGNATURE_DIR in dirs:
            dirs.remove(CODE_SIGNATURE_DIR)
        dirs.sort()
        for name in sorted(files):
            path = root_path / name
            if path.is_symlink() or not path.is_file():
                continue
            relative = path.relative_to(bundle_dir).as_posix()
            if relative not in excluded:
                yield relative


def hash_file(path: Path) -> tuple[bytes, bytes]:
    """SHA-1 and SHA-256 digests of a file."""
    sha1 = hashlib.sha1()
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            sha1.update(chunk)
            sha256.update(chunk)
    return sha1.digest(), sha256.digest()


def build_manifest(bundle_dir: Path, exclude: Iterable[str] = ()) -> dict[str, Any]:
    """Compute the manifest dictionary for a bundle."""
    files: dict[str, bytes] = {}
    files2: dict[str, dict[str, bytes]] = {}
    for relative in iter_bundle_files(bundle_dir, exclude):
        sha1, sha256 = hash_file(bundle_dir / relative)
        files[relative] = sha1
        files2[relative] = {"hash2": sha256}

    return {"files": files, "files2": files2, "rules": RULES, "rules2": RULES2}


def write_manifest(bundle_dir: Path, exclude: Iterable[str] = ()) -> bytes:
    """
    Build the manifest from scratch and write it into the bundle.

    Args:
        bundle_dir: Bundle directory.
        exclude: Bundle-relative paths to leave out (a nested bundle's
            executable, which is signed after its manifest is sealed).

    Returns:
        The serialized manifest, for binding into a code signature.
    """
    manifest = build_manifest(bundle_dir, exclude)
    data = plistlib.dumps(manifest, fmt=plistlib.FMT_XML, sort_keys=True)

    target = manifest_path(bundle_dir)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    logger.debug(f"Sealed {len(manifest['files2'])} files in {bundle_dir.name}")
    return data


def read_manifest(bundle_dir: Path) -> dict[str, Any]:
    with open(manifest_path(bundle_dir), "rb") as f:
        return plistlib.load(f)


def verify_manifest(bundle_dir: Path) -> list[str]:
    """
    Recompute hashes and compare them against the bundle's manifest.

    A bundle's own executable may be absent from its manifest, as it is
    for nested frameworks.

    Returns:
        Sorted bundle-relative paths that are modified, missing from
        disk, or present on disk but not sealed. Empty when intact.
    """
    bundle_dir = Path(bundle_dir)
    sealed = read_manifest(bundle_dir).get("files2", {})
    unsealed_ok = {_bundle_executable(bundle_dir)} - set(sealed)

    mismatches = set()
    seen = set()
    for relative in iter_bundle_files(bundle_dir):
        seen.add(relative)
        entry = sealed.get(relative)
        if entry is None:
            if relative not in unsealed_ok:
                mismatches.add(relative)
            continue
        _, sha256 = hash_file(bundle_dir / relative)
        if entry.get("hash2") != sha256:
            mismatches.add(relative)

    mismatches.update(path for path in sealed if path not in seen)
    return sorted(mismatches)


def _bundle_executable(bundle_dir: Path) -> Optional[str]:
    info_path = bundle_dir / INFO_PLIST
    if not info_path.is_file():
        return None
    try:
        with open(info_path, "rb") as f:
            info = plistlib.load(f)
    except (ValueError, ExpatError, OSError):
        return None
    executable = info.get("CFBundleExecutable") if isinstance(info, dict) else None
    return executable if isinstance(executable, str) else None
