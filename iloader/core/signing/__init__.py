"""
IPA code signing.

Example:
    from iloader.core.signing import P12IdentitySource, SigningEngine

    engine = SigningEngine()
    engine.sign(
        Path("App.ipa"),
        Path("App-signed.ipa"),
        P12IdentitySource(Path("dev.p12").read_bytes(), "secret"),
        Path("dev.mobileprovision").read_bytes(),
    )
"""

from iloader.core.signing.codesign import CodeDirectory, CodeSigner
from iloader.core.signing.engine import SigningEngine, SigningProgress
from iloader.core.signing.identity import (
    AppleIdIdentitySource,
    IdentitySource,
    P12IdentitySource,
    SigningIdentity,
    load_p12,
)
from iloader.core.signing.macho import MachOBinary, MachOParser
from iloader.core.signing.ipa import read_ipa_info, verify_ipa
from iloader.core.signing.manifest import verify_manifest, write_manifest
from iloader.core.signing.profile import ProfileInfo, parse_profile

__all__ = [
    "AppleIdIdentitySource",
    "CodeDirectory",
    "CodeSigner",
    "IdentitySource",
    "MachOBinary",
    "MachOParser",
    "P12IdentitySource",
    "ProfileInfo",
    "SigningEngine",
    "SigningIdentity",
    "SigningProgress",
    "load_p12",
    "parse_profile",
    "read_ipa_info",
    "verify_ipa",
    "verify_manifest",
    "write_manifest",
]
