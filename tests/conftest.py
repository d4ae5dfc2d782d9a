"""
Pytest configuration and fixtures for iloader tests.

This module provides common fixtures used across the test suite,
including a test configuration, an in-memory secret vault, Anisette
headers, a self-signed signing identity and builders for synthetic
Mach-O binaries, IPAs and provisioning profiles.
"""

from __future__ import annotations

import datetime
import hashlib
import hmac
import plistlib
import struct
import zipfile
from pathlib import Path
from typing import Any, Optional

import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    pkcs12,
)
from cryptography.x509.oid import NameOID

from iloader.config import Config
from iloader.core.accounts import AccountStore
from iloader.core.anisette import AnisetteHeaders
from iloader.core.signing import SigningIdentity


# Test account data
TEST_APPLE_ID = "user@example.com"
TEST_PASSWORD = "hunter2"
TEST_TOKEN = b"sig-session-token"
TEST_TEAM_ID = "ABCDE12345"
TEST_ANISETTE_SERVER = "ani.example.com"
TEST_BUNDLE_ID = "com.example.test"
TEST_P12_PASSWORD = "secret"


class MemoryVault:
    """SecretVault keeping secrets in a dict."""

    def __init__(self) -> None:
        self.entries: dict[str, bytes] = {}

    def get(self, key: str) -> Optional[bytes]:
        return self.entries.get(key)

    def set(self, key: str, value: bytes) -> None:
        self.entries[key] = bytes(value)

    def delete(self, key: str) -> None:
        self.entries.pop(key, None)


def make_response(
    status_code: int = 200,
    content: bytes = b"",
    reason: str = "OK",
    cookies: Optional[dict[str, str]] = None,
) -> requests.Response:
    """Build a real requests.Response with a preloaded body."""
    response = requests.Response()
    response.status_code = status_code
    response._content = content
    response._content_consumed = True
    response.reason = reason
    for name, value in (cookies or {}).items():
        response.cookies.set(name, value)
    return response


def make_plist_response(body: dict[str, Any], status_code: int = 200) -> requests.Response:
    return make_response(status_code, plistlib.dumps(body, fmt=plistlib.FMT_XML))


# Mach-O builders

def build_segment_64(name: str, vmaddr: int, vmsize: int, fileoff: int, filesize: int) -> bytes:
    """An LC_SEGMENT_64 command without sections."""
    return struct.pack(
        "<II16sQQQQIIII",
        0x19, 72, name.encode("ascii"),
        vmaddr, vmsize, fileoff, filesize,
        5, 5, 0, 0,
    )


def build_thin_macho(
    filetype: int = 0x2,
    text_size: int = 0x1000,
    linkedit_size: int = 0x100,
    with_linkedit: bool = True,
) -> bytes:
    """
    A minimal 64-bit little-endian arm64 Mach-O.

    __TEXT covers the header and load commands; __LINKEDIT follows it.
    """
    commands = build_segment_64("__TEXT", 0x100000000, text_size, 0, text_size)
    ncmds = 1
    if with_linkedit:
        commands += build_segment_64(
            "__LINKEDIT", 0x100000000 + text_size, 0x4000, text_size, linkedit_size
        )
        ncmds += 1

    header = struct.pack(
        "<8I", 0xFEEDFACF, 0x0100000C, 0, filetype, ncmds, len(commands), 0, 0
    )
    data = bytearray(text_size + linkedit_size)
    data[: len(header) + len(commands)] = header + commands
    data[text_size : text_size + 16] = b"\xbb" * 16
    return bytes(data)


def build_fat_macho(*slices: bytes) -> bytes:
    """Wrap thin slices in a FAT header, each aligned to 2^14."""
    header = bytearray(struct.pack(">II", 0xCAFEBABE, len(slices)))
    offset = 0x4000
    placed = []
    for body in slices:
        header += struct.pack(">IIIII", 0x0100000C, 0, offset, len(body), 14)
        placed.append((offset, body))
        offset += (len(body) + 0x3FFF) // 0x4000 * 0x4000

    out = bytearray(header)
    for slice_offset, body in placed:
        out += b"\x00" * (slice_offset - len(out))
        out += body
    return bytes(out)


# IPA and profile builders

def info_plist(bundle_id: str, executable: str, name: str = "Test") -> bytes:
    return plistlib.dumps(
        {
            "CFBundleIdentifier": bundle_id,
            "CFBundleExecutable": executable,
            "CFBundleName": name,
            "CFBundleShortVersionString": "1.0",
        }
    )


def build_ipa(
    path: Path,
    bundle_id: str = TEST_BUNDLE_ID,
    apps: tuple[str, ...] = ("Test",),
    with_framework: bool = False,
    with_extension: bool = False,
    executable: Optional[bytes] = None,
) -> Path:
    """Write an IPA holding one Payload/<name>.app per entry in apps."""
    binary = executable if executable is not None else build_thin_macho()
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for name in apps:
            root = f"Payload/{name}.app"
            zf.writestr(f"{root}/Info.plist", info_plist(bundle_id, name, name))
            zf.writestr(f"{root}/{name}", binary)
            zf.writestr(f"{root}/Assets.car", b"assets")
            zf.writestr(f"{root}/en.lproj/Localizable.strings", b'"hello" = "Hello";')
            if with_framework:
                fw = f"{root}/Frameworks/Helper.framework"
                zf.writestr(f"{fw}/Info.plist", info_plist("com.example.helper", "Helper"))
                zf.writestr(f"{fw}/Helper", build_thin_macho(filetype=0x6))
            if with_extension:
                ext = f"{root}/PlugIns/Widget.appex"
                zf.writestr(f"{ext}/Info.plist", info_plist(f"{bundle_id}.widget", "Widget"))
                zf.writestr(f"{ext}/Widget", build_thin_macho(filetype=0x8))
    return path


def build_profile(
    certificate_der: bytes,
    team_id: str = TEST_TEAM_ID,
    app_identifier: Optional[str] = None,
) -> bytes:
    """A provisioning profile: a property list inside opaque CMS bytes."""
    plist = plistlib.dumps(
        {
            "UUID": "6F1A2B3C-0000-4000-8000-123456789ABC",
            "Name": "iOS Team Provisioning Profile: *",
            "AppIDName": "Test",
            "TeamIdentifier": [team_id],
            "Entitlements": {
                "application-identifier": app_identifier or f"{team_id}.*",
                "com.apple.developer.team-identifier": team_id,
                "get-task-allow": True,
                "keychain-access-groups": [f"{team_id}.*"],
            },
            "ExpirationDate": datetime.datetime(2030, 1, 1),
            "DeveloperCertificates": [certificate_der],
        }
    )
    return b"\x30\x82\x10\x00\x06\x09" + plist + b"\x00\xa0\x82"


def make_certificate(
    private_key: rsa.RSAPrivateKey,
    common_name: str = "Apple Development: user@example.com",
    team_id: str = TEST_TEAM_ID,
    issuer_key: Optional[rsa.RSAPrivateKey] = None,
) -> x509.Certificate:
    """Self-signed (or issuer-signed) development certificate for a key."""
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, team_id),
        ]
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=7))
        .sign(issuer_key or private_key, hashes.SHA256())
    )


# Fixtures

@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Create a test configuration rooted in a temp directory."""
    return Config(
        config_dir=tmp_path / "config",
        output_dir=tmp_path / "signed",
        work_dir=tmp_path / "work",
    )


@pytest.fixture
def memory_vault() -> MemoryVault:
    """Create an empty in-memory vault."""
    return MemoryVault()


@pytest.fixture
def account_store(tmp_path: Path, memory_vault: MemoryVault) -> AccountStore:
    """Create an account store backed by the memory vault."""
    return AccountStore(tmp_path / "config" / "accounts.json", memory_vault)


@pytest.fixture
def anisette_headers() -> AnisetteHeaders:
    """Create a complete Anisette header set."""
    return AnisetteHeaders(
        machine_id="bWFjaGluZS1pZA==",
        one_time_password="b3RwLXZhbHVl",
        local_user_id="0123456789ABCDEF",
        routing_info="17106176",
        device_id="00000000-1111-2222-3333-444444444444",
        serial_number="0",
        client_info="<MacBookPro15,1> <Mac OS X;10.15.2;19C57> <com.apple.AuthKit/1 (com.apple.dt.Xcode/3594.4.19)>",
        client_time="2024-01-01T00:00:00Z",
        locale="en_US",
        timezone="UTC",
    )


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """Create an RSA-2048 key shared by the session."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(rsa_key: rsa.RSAPrivateKey) -> x509.Certificate:
    """Create a self-signed development certificate for rsa_key."""
    return make_certificate(rsa_key)


@pytest.fixture
def signing_identity(rsa_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> SigningIdentity:
    """Create a signing identity from the session key and certificate."""
    return SigningIdentity.create(certificate, rsa_key)


@pytest.fixture
def p12_data(rsa_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> bytes:
    """Create PKCS#12 bytes protected with TEST_P12_PASSWORD."""
    return pkcs12.serialize_key_and_certificates(
        b"iloader",
        rsa_key,
        certificate,
        None,
        BestAvailableEncryption(TEST_P12_PASSWORD.encode("utf-8")),
    )


@pytest.fixture
def profile_data(certificate: x509.Certificate) -> bytes:
    """Create a wildcard team provisioning profile listing the certificate."""
    return build_profile(certificate.public_bytes(Encoding.DER))


@pytest.fixture
def test_ipa(tmp_path: Path) -> Path:
    """Create an IPA with a framework and an app extension."""
    return build_ipa(tmp_path / "Test.ipa", with_framework=True, with_extension=True)


def encrypt_server_data(session_key: bytes, data: bytes) -> bytes:
    """Encrypt spd the way GSA does for encryption type 2 (AES-256-CBC)."""
    key = hmac.new(session_key, b"extra data key:", hashlib.sha256).digest()
    iv = hmac.new(session_key, b"extra data iv:", hashlib.sha256).digest()[:16]
    padder = padding.PKCS7(128).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()
