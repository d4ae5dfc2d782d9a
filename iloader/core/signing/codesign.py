"""
Apple code signature blobs.

Builds the embedded signature superblob that goes at the end of a
Mach-O slice: a CodeDirectory of SHA-256 page hashes, an empty
requirements set, the entitlements (XML and DER forms) and a detached
CMS signature over the CodeDirectory.

References:
    - xnu osfmk/kern/cs_blobs.h
    - Apple TN3125: Inside Code Signing: Provisioning Profiles
"""

from __future__ import annotations

import hashlib
import logging
import plistlib
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from iloader.constants import (
    CMS_RESERVED_SIZE,
    CODE_SIGN_ALIGN,
    CODE_SIGN_PAGE_SHIFT,
    CODE_SIGN_PAGE_SIZE,
)
from iloader.core.signing.identity import SigningIdentity
from iloader.core.signing.macho import FileType, SignatureLayout, align, sign_macho
from iloader.exceptions import MachOParseError, MachOSignError

logger = logging.getLogger(__name__)


class CSMagic(IntEnum):
    """Code signing blob magic numbers."""

    REQUIREMENTS = 0xFADE0C01
    CODEDIRECTORY = 0xFADE0C02
    EMBEDDED_SIGNATURE = 0xFADE0CC0
    ENTITLEMENTS = 0xFADE7171
    DER_ENTITLEMENTS = 0xFADE7172
    BLOBWRAPPER = 0xFADE0B01


class CSSlot(IntEnum):
    """Superblob index types and CodeDirectory special slot numbers."""

    CODEDIRECTORY = 0
    INFOSLOT = 1
    REQUIREMENTS = 2
    RESOURCEDIR = 3
    APPLICATION = 4
    ENTITLEMENTS = 5
    DER_ENTITLEMENTS = 7
    SIGNATURESLOT = 0x10000


CD_VERSION = 0x20400
CD_HEADER_SIZE = 88
CD_HASH_TYPE_SHA256 = 2
CD_HASH_SIZE = 32
SPECIAL_SLOT_COUNT = 7
SUPERBLOB_HEADER_SIZE = 12
SUPERBLOB_INDEX_SIZE = 8

EXECSEG_MAIN_BINARY = 0x1
EXECSEG_ALLOW_UNSIGNED = 0x10


def make_blob(magic: int, payload: bytes) -> bytes:
    """Wrap a payload in a generic blob header (magic, length)."""
    return struct.pack(">II", magic, 8 + len(payload)) + payload


def requirements_blob() -> bytes:
    """An empty requirements set."""
    return struct.pack(">III", CSMagic.REQUIREMENTS, 12, 0)


def entitlements_blob(entitlements: dict[str, Any]) -> bytes:
    return make_blob(
        CSMagic.ENTITLEMENTS, plistlib.dumps(entitlements, fmt=plistlib.FMT_XML)
    )


def der_entitlements_blob(entitlements: dict[str, Any]) -> bytes:
    return make_blob(CSMagic.DER_ENTITLEMENTS, encode_der_entitlements(entitlements))


def _der_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    raw = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(raw)]) + raw


def _der(tag: int, content: bytes) -> bytes:
    return bytes([tag]) + _der_length(len(content)) + content


def _der_value(value: Any) -> bytes:
    if isinstance(value, bool):
        return _der(0x01, b"\xff" if value else b"\x00")
    if isinstance(value, int):
        return _der(0x02, value.to_bytes((value.bit_length() + 8) // 8, "big", signed=True))
    if isinstance(value, str):
        return _der(0x0C, value.encode("utf-8"))
    if isinstance(value, (list, tuple)):
        return _der(0x30, b"".join(_der_value(v) for v in value))
    if isinstance(value, dict):
        entries = [
            _der(0x30, _der(0x0C, key.encode("utf-8")) + _der_value(value[key]))
            for key in sorted(value)
        ]
        return _der(0x31, b"".join(entries))
    raise ValueError(f"cannot encode {type(value).__name__} entitlement value")


def encode_der_entitlements(entitlements: dict[str, Any]) -> bytes:
    """
    Encode entitlements in the DER form iOS 15+ reads.

    [APPLICATION 16] { INTEGER 1, [CONTEXT 16] { SET OF key/value } }
    """
    return _der(0x70, _der(0x02, b"\x01") + _der(0xB0, _der_value(entitlements)))


def page_hashes(data: bytes, code_limit: int) -> list[bytes]:
    """SHA-256 of every page up to the code limit; the last page may be short."""
    return [
        hashlib.sha256(data[offset : min(offset + CODE_SIGN_PAGE_SIZE, code_limit)]).digest()
        for offset in range(0, code_limit, CODE_SIGN_PAGE_SIZE)
    ]


@dataclass
class CodeDirectory:
    """
    A version 0x20400 CodeDirectory.

    Attributes:
        identifier: Signing identifier (bundle id or file name).
        team_id: Team identifier, if any.
        code_limit: Bytes of the slice covered by code hashes.
        code_hashes: One SHA-256 per page.
        special_hashes: Special slot number to hash; missing slots are zero.
        exec_seg_base: File offset of __TEXT.
        exec_seg_limit: Size of __TEXT.
        exec_seg_flags: EXECSEG_* flags.
    """

    identifier: str
    team_id: Optional[str]
    code_limit: int
    code_hashes: list[bytes]
    special_hashes: dict[int, bytes] = field(default_factory=dict)
    exec_seg_base: int = 0
    exec_seg_limit: int = 0
    exec_seg_flags: int = 0
    flags: int = 0

    @staticmethod
    def size_for(identifier: str, team_id: Optional[str], code_limit: int) -> int:
        n_code = (code_limit + CODE_SIGN_PAGE_SIZE - 1) // CODE_SIGN_PAGE_SIZE
        size = CD_HEADER_SIZE + len(identifier.encode("utf-8")) + 1
        if team_id:
            size += len(team_id.encode("utf-8")) + 1
        return size + (SPECIAL_SLOT_COUNT + n_code) * CD_HASH_SIZE

    def to_bytes(self) -> bytes:
        ident = self.identifier.encode("utf-8") + b"\x00"
        team = self.team_id.encode("utf-8") + b"\x00" if self.team_id else b""

        ident_offset = CD_HEADER_SIZE
        team_offset = ident_offset + len(ident) if team else 0
        hash_offset = ident_offset + len(ident) + len(team) + SPECIAL_SLOT_COUNT * CD_HASH_SIZE
        length = hash_offset + len(self.code_hashes) * CD_HASH_SIZE

        header = struct.pack(
            ">9I4B4I4Q",
            CSMagic.CODEDIRECTORY,
            length,
            CD_VERSION,
            self.flags,
            hash_offset,
            ident_offset,
            SPECIAL_SLOT_COUNT,
            len(self.code_hashes),
            self.code_limit,
            CD_HASH_SIZE,
            CD_HASH_TYPE_SHA256,
            0,  # platform
            CODE_SIGN_PAGE_SHIFT,
            0,  # spare2
            0,  # scatterOffset
            team_offset,
            0,  # spare3
            0,  # codeLimit64
            self.exec_seg_base,
            self.exec_seg_limit,
            self.exec_seg_flags,
        )

        # special slots are stored from the highest number down to slot 1
        special = b"".join(
            self.special_hashes.get(slot, b"\x00" * CD_HASH_SIZE)
            for slot in range(SPECIAL_SLOT_COUNT, 0, -1)
        )
        return header + ident + team + special + b"".join(self.code_hashes)


def build_superblob(entries: list[tuple[int, bytes]]) -> bytes:
    """Assemble an embedded signature superblob from (slot, blob) pairs."""
    offset = SUPERBLOB_HEADER_SIZE + SUPERBLOB_INDEX_SIZE * len(entries)
    index = b""
    for slot, blob in entries:
        index += struct.pack(">II", slot, offset)
        offset += len(blob)
    header = struct.pack(">III", CSMagic.EMBEDDED_SIGNATURE, offset, len(entries))
    return header + index + b"".join(blob for _, blob in entries)


def build_cms(code_directory: bytes, identity: SigningIdentity) -> bytes:
    """Detached CMS signature (RSA PKCS#1 v1.5, SHA-256) over a CodeDirectory."""
    builder = (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(code_directory)
        .add_signer(identity.certificate, identity.private_key, hashes.SHA256())
    )
    for cert in identity.chain:
        builder = builder.add_certificate(cert)
    return builder.sign(
        serialization.Encoding.DER,
        [
            pkcs7.PKCS7Options.DetachedSignature,
            pkcs7.PKCS7Options.Binary,
            pkcs7.PKCS7Options.NoCapabilities,
        ],
    )


class CodeSigner:
    """
    Signs Mach-O files with one identity.

    Example:
        signer = CodeSigner(identity, team_id="ABCDE12345")
        signer.sign_file(app / "MyApp", "com.example.app",
                         info_plist=..., entitlements=...)
    """

    def __init__(self, identity: SigningIdentity, team_id: Optional[str] = None):
        self.identity = identity
        self.team_id = team_id
        self._cms_reserve = CMS_RESERVED_SIZE + sum(
            len(c.public_bytes(serialization.Encoding.DER))
            for c in [identity.certificate, *identity.chain]
        )

    def sign(
        self,
        data: bytes,
        identifier: str,
        info_plist: Optional[bytes] = None,
        resources: Optional[bytes] = None,
        entitlements: Optional[dict[str, Any]] = None,
    ) -> bytes:
        """
        Sign Mach-O data.

        Args:
            data: Thin or FAT Mach-O contents.
            identifier: Signing identifier.
            info_plist: Bytes of the bundle's Info.plist, bound to slot 1.
            resources: Bytes of the bundle's CodeResources, bound to slot 3.
            entitlements: Entitlements to embed, if any.

        Returns:
            Signed contents.

        Raises:
            MachOSignError: If the data cannot be signed.
        """
        requirements = requirements_blob()
        extra: list[tuple[int, bytes]] = []
        if entitlements is not None:
            try:
                extra = [
                    (CSSlot.ENTITLEMENTS, entitlements_blob(entitlements)),
                    (CSSlot.DER_ENTITLEMENTS, der_entitlements_blob(entitlements)),
                ]
            except (TypeError, ValueError, OverflowError) as e:
                raise MachOSignError(identifier, f"invalid entitlements: {e}") from e

        special: dict[int, bytes] = {
            CSSlot.REQUIREMENTS: hashlib.sha256(requirements).digest(),
        }
        if info_plist is not None:
            special[CSSlot.INFOSLOT] = hashlib.sha256(info_plist).digest()
        if resources is not None:
            special[CSSlot.RESOURCEDIR] = hashlib.sha256(resources).digest()
        for slot, blob in extra:
            special[slot] = hashlib.sha256(blob).digest()

        blob_count = 3 + len(extra)
        fixed = (
            SUPERBLOB_HEADER_SIZE
            + SUPERBLOB_INDEX_SIZE * blob_count
            + len(requirements)
            + sum(len(blob) for _, blob in extra)
            + 8  # CMS blob wrapper header
            + self._cms_reserve
        )

        def signature_size(code_limit: int) -> int:
            cd_size = CodeDirectory.size_for(identifier, self.team_id, code_limit)
            return align(fixed + cd_size, CODE_SIGN_ALIGN)

        def build(prepared: bytes, layout: SignatureLayout) -> bytes:
            exec_flags = 0
            if layout.filetype == FileType.MH_EXECUTE:
                exec_flags |= EXECSEG_MAIN_BINARY
                if entitlements and entitlements.get("get-task-allow"):
                    exec_flags |= EXECSEG_ALLOW_UNSIGNED

            directory = CodeDirectory(
                identifier=identifier,
                team_id=self.team_id,
                code_limit=layout.code_limit,
                code_hashes=page_hashes(prepared, layout.code_limit),
                special_hashes=special,
                exec_seg_base=layout.text_offset,
                exec_seg_limit=layout.text_size,
                exec_seg_flags=exec_flags,
            ).to_bytes()

            cms = make_blob(CSMagic.BLOBWRAPPER, build_cms(directory, self.identity))
            return build_superblob(
                [(CSSlot.CODEDIRECTORY, directory), (CSSlot.REQUIREMENTS, requirements)]
                + extra
                + [(CSSlot.SIGNATURESLOT, cms)]
            )

        try:
            return sign_macho(data, signature_size, build)
        except MachOParseError as e:
            raise MachOSignError(identifier, e.details) from e

    def sign_file(self, path: Path, identifier: str, **kwargs: Any) -> None:
        """Sign a file in place. Keyword arguments are passed to sign()."""
        try:
            data = path.read_bytes()
        except OSError as e:
            raise MachOSignError(path.name, "cannot read binary") from e
        signed = self.sign(data, identifier, **kwargs)
        path.write_bytes(signed)
        logger.debug(f"Signed {path.name} as {identifier}")
