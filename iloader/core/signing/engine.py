"""
IPA re-signing pipeline.

Stages run strictly in order, each feeding the next:

    extract -> identity -> profile -> nested binaries -> main binary
            -> manifest -> repackage -> publish

All intermediate files live in a scratch directory owned by the call
and removed before it returns, whatever the outcome. Nothing is written
at the output path until the final stage, which replaces it atomically.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from iloader.constants import (
    CODE_SIGNATURE_DIR,
    EMBEDDED_PROFILE,
    FRAMEWORKS_DIR,
    INFO_PLIST,
    PAYLOAD_DIR,
    PLUGINS_DIR,
)
from iloader.core.signing.codesign import CodeSigner
from iloader.core.signing.identity import IdentitySource
from iloader.core.signing.ipa import (
    create_ipa,
    executable_name,
    extract_ipa,
    publish,
    read_info_plist,
    write_info_plist,
)
from iloader.core.signing.macho import MachOParser
from iloader.core.signing.manifest import write_manifest
from iloader.core.signing.profile import ProfileInfo, parse_profile, signing_entitlements
from iloader.exceptions import ExtractionFailedError, MachOSignError, OperationCancelledError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningProgress:
    """
    Progress of a signing run.

    Attributes:
        step: Label of the stage that just finished.
        fraction: Share of the pipeline done, in [0, 1].
        complete: True on the final report only.
    """

    step: str
    fraction: float
    complete: bool = False


ProgressCallback = Callable[[SigningProgress], None]

STAGES = [
    "Extracting IPA",
    "Resolving signing identity",
    "Installing provisioning profile",
    "Signing frameworks",
    "Signing app",
    "Sealing resources",
    "Repackaging IPA",
    "Publishing",
]


class _Run:
    """Progress and cancellation bookkeeping for one sign() call."""

    def __init__(self, progress: Optional[ProgressCallback], cancel_event: Optional[threading.Event]):
        self._progress = progress
        self._cancel_event = cancel_event
        self._done = 0

    def checkpoint(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise OperationCancelledError(STAGES[self._done])

    def finished(self) -> None:
        label = STAGES[self._done]
        self._done += 1
        logger.debug(f"Signing stage done: {label}")
        if self._progress is not None:
            complete = self._done == len(STAGES)
            self._progress(SigningProgress(label, self._done / len(STAGES), complete))


class SigningEngine:
    """
    Re-signs IPAs with a signing identity and a provisioning profile.

    Example:
        engine = SigningEngine()
        engine.sign(
            Path("App.ipa"),
            Path("App-signed.ipa"),
            P12IdentitySource(p12_bytes, "secret"),
            profile_bytes,
            bundle_id="com.example.app",
            progress=lambda p: print(f"{p.fraction:.0%} {p.step}"),
        )
    """

    def __init__(self, work_dir: Optional[Path] = None):
        """
        Initialize the engine.

        Args:
            work_dir: Parent for scratch directories. If None, uses the
                system temp directory.
        """
        self.work_dir = work_dir

    def sign(
        self,
        ipa_path: Path,
        output_path: Path,
        identity_source: IdentitySource,
        profile: bytes,
        bundle_id: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """
        Sign an IPA.

        Args:
            ipa_path: Source IPA.
            output_path: Where the signed IPA is published.
            identity_source: Produces the signing identity.
            profile: Provisioning profile blob.
            bundle_id: Target bundle identifier; the IPA's own when None.
            progress: Called after every stage.
            cancel_event: Checked before every stage.

        Returns:
            The output path.

        Raises:
            ExtractionFailedError: If the IPA is invalid or holds no single app.
            CertificateNotFoundError: If no signing identity can be resolved.
            MachOSignError: If a binary cannot be signed.
            RepackageFailedError: If the signed IPA cannot be written.
            OperationCancelledError: If cancelled between stages.
        """
        run = _Run(progress, cancel_event)

        if self.work_dir is not None:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix="iloader_sign_", dir=self.work_dir))

        try:
            run.checkpoint()
            extract_dir = scratch / "extract"
            extract_dir.mkdir()
            app_dir = extract_ipa(Path(ipa_path), extract_dir)
            run.finished()

            run.checkpoint()
            identity = identity_source.resolve()
            run.finished()

            run.checkpoint()
            profile_info = parse_profile(profile)
            final_bundle_id = self._install_profile(app_dir, profile, bundle_id)
            if not profile_info.allows_certificate(identity.certificate_der):
                logger.warning("Signing certificate is not listed in the provisioning profile")
            run.finished()

            signer = CodeSigner(identity, team_id=profile_info.team_id or identity.team_id)

            run.checkpoint()
            self._sign_nested(app_dir, signer, profile_info)
            run.finished()

            run.checkpoint()
            self._sign_main(app_dir, signer, profile_info, final_bundle_id)
            run.finished()

            run.checkpoint()
            shutil.rmtree(app_dir / CODE_SIGNATURE_DIR, ignore_errors=True)
            write_manifest(app_dir)
            run.finished()

            run.checkpoint()
            packed = scratch / "signed.ipa"
            create_ipa(extract_dir / PAYLOAD_DIR, packed)
            run.finished()

            run.checkpoint()
            result = publish(packed, Path(output_path))
            run.finished()

            logger.info(f"Signed {app_dir.name} as {final_bundle_id}")
            return result

        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _install_profile(self, app_dir: Path, profile: bytes, bundle_id: Optional[str]) -> str:
        """Embed the profile and apply the target bundle identifier."""
        (app_dir / EMBEDDED_PROFILE).write_bytes(profile)

        info = read_info_plist(app_dir)
        original = info.get("CFBundleIdentifier")
        if not isinstance(original, str) or not original:
            raise ExtractionFailedError(f"{app_dir.name} has no bundle identifier")

        if not bundle_id or bundle_id == original:
            return original

        info["CFBundleIdentifier"] = bundle_id
        write_info_plist(app_dir, info)
        logger.info(f"Changed bundle identifier {original} -> {bundle_id}")

        plugins = app_dir / PLUGINS_DIR
        for appex in sorted(plugins.glob("*.appex")) if plugins.is_dir() else []:
            appex_info = read_info_plist(appex)
            current = appex_info.get("CFBundleIdentifier")
            if isinstance(current, str) and current.startswith(original + "."):
                appex_info["CFBundleIdentifier"] = bundle_id + current[len(original):]
                write_info_plist(appex, appex_info)
                logger.debug(f"Changed extension identifier {current}")

        return bundle_id

    def _sign_nested(self, app_dir: Path, signer: CodeSigner, profile_info: ProfileInfo) -> None:
        """Sign frameworks, dylibs and app extensions, innermost first."""
        frameworks = app_dir / FRAMEWORKS_DIR
        if frameworks.is_dir():
            for framework in sorted(frameworks.glob("*.framework")):
                self._sign_bundle(framework, signer, entitlements=None)
            for dylib in sorted(frameworks.glob("*.dylib")):
                self._sign_binary(dylib, signer, identifier=dylib.stem)

        plugins = app_dir / PLUGINS_DIR
        if plugins.is_dir():
            for appex in sorted(plugins.glob("*.appex")):
                info = read_info_plist(appex)
                entitlements = signing_entitlements(profile_info, info.get("CFBundleIdentifier"))
                self._sign_bundle(appex, signer, entitlements=entitlements)

    def _sign_bundle(
        self,
        bundle: Path,
        signer: CodeSigner,
        entitlements: Optional[dict[str, Any]],
    ) -> None:
        """Seal a nested bundle's resources, then sign its executable bound to them."""
        info = read_info_plist(bundle)
        executable = executable_name(info)
        identifier = info.get("CFBundleIdentifier") or bundle.stem

        shutil.rmtree(bundle / CODE_SIGNATURE_DIR, ignore_errors=True)
        resources = write_manifest(bundle, exclude=[executable] if executable else [])

        if executable is None or not (bundle / executable).is_file():
            logger.debug(f"{bundle.name} has no executable, sealed resources only")
            return

        self._sign_binary(
            bundle / executable,
            signer,
            identifier=identifier,
            info_plist=(bundle / INFO_PLIST).read_bytes(),
            resources=resources,
            entitlements=entitlements,
        )

    def _sign_main(
        self,
        app_dir: Path,
        signer: CodeSigner,
        profile_info: ProfileInfo,
        bundle_id: str,
    ) -> None:
        info = read_info_plist(app_dir)
        executable = executable_name(info)
        if executable is None or not (app_dir / executable).is_file():
            raise MachOSignError(app_dir.name, "main executable not found")

        self._sign_binary(
            app_dir / executable,
            signer,
            identifier=bundle_id,
            info_plist=(app_dir / INFO_PLIST).read_bytes(),
            entitlements=signing_entitlements(profile_info, bundle_id),
        )

    def _sign_binary(self, path: Path, signer: CodeSigner, identifier: str, **kwargs: Any) -> None:
        with open(path, "rb") as f:
            magic = f.read(4)
        if not MachOParser.is_macho(magic):
            raise MachOSignError(path.name, "not a Mach-O binary")
        signer.sign_file(path, identifier, **kwargs)
