"""
Mach-O binary parsing and code signature embedding.

This module reads the headers and load commands of thin and FAT Mach-O
binaries and rewrites them so a code signature superblob can be appended
at the end of __LINKEDIT, referenced by LC_CODE_SIGNATURE.

References:
    - https://github.com/qyang-nj/llios
    - Apple Mach-O Reference
    - xnu osfmk/kern/cs_blobs.h
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Optional

from iloader.constants import CODE_SIGN_ALIGN, LINKEDIT_PAGE_ALIGN
from iloader.exceptions import MachOParseError

logger = logging.getLogger(__name__)


# Mach-O magic numbers, as read little-endian
class MachOMagic(IntEnum):
    """Mach-O file magic numbers."""

    MH_MAGIC = 0xFEEDFACE  # 32-bit little-endian file
    MH_CIGAM = 0xCEFAEDFE  # 32-bit big-endian file
    MH_MAGIC_64 = 0xFEEDFACF  # 64-bit little-endian file
    MH_CIGAM_64 = 0xCFFAEDFE  # 64-bit big-endian file
    FAT_MAGIC = 0xCAFEBABE
    FAT_CIGAM = 0xBEBAFECA
    FAT_MAGIC_64 = 0xCAFEBABF
    FAT_CIGAM_64 = 0xBFBAFECA


class MachOCPUType(IntEnum):
    """Mach-O CPU type identifiers."""

    ARM = 12
    ARM64 = 12 | 0x01000000  # CPU_ARCH_ABI64
    X86 = 7
    X86_64 = 7 | 0x01000000


class LoadCommand(IntEnum):
    """Load commands the signer reads or writes."""

    LC_SEGMENT = 0x1
    LC_SEGMENT_64 = 0x19
    LC_CODE_SIGNATURE = 0x1D


class FileType(IntEnum):
    """Mach-O file types."""

    MH_EXECUTE = 0x2
    MH_DYLIB = 0x6
    MH_BUNDLE = 0x8


MACH_HEADER_SIZE = 28
MACH_HEADER_64_SIZE = 32
FAT_HEADER_SIZE = 8
FAT_ARCH_SIZE = 20
LINKEDIT_CMD_SIZE = 16
SEGMENT_CMD_SIZE = 56
SEGMENT_64_CMD_SIZE = 72
SECTION_SIZE = 68
SECTION_64_SIZE = 80


def align(value: int, alignment: int) -> int:
    """Round value up to a multiple of alignment."""
    return (value + alignment - 1) // alignment * alignment


@dataclass
class Segment:
    """
    A segment load command.

    Attributes:
        name: Segment name (e.g. "__TEXT").
        cmd_offset: Offset of the load command within the slice.
        vmsize: Size in memory.
        fileoff: Offset of the segment's data within the slice.
        filesize: Size of the segment's data.
        first_section_offset: Smallest non-zero file offset of its sections.
    """

    name: str
    cmd_offset: int
    vmsize: int
    fileoff: int
    filesize: int
    first_section_offset: Optional[int] = None


@dataclass
class CodeSignatureCommand:
    """An LC_CODE_SIGNATURE load command."""

    cmd_offset: int
    dataoff: int
    datasize: int


@dataclass
class MachOSlice:
    """
    One architecture of a Mach-O file.

    For non-FAT binaries there is a single slice at offset 0.
    """

    offset: int
    size: int
    cpu_type: int
    cpu_subtype: int
    is_64bit: bool
    is_little_endian: bool
    filetype: int
    ncmds: int
    sizeofcmds: int
    segments: list[Segment] = field(default_factory=list)
    code_signature: Optional[CodeSignatureCommand] = None
    align: int = 14

    @property
    def header_size(self) -> int:
        return MACH_HEADER_64_SIZE if self.is_64bit else MACH_HEADER_SIZE

    @property
    def endian(self) -> str:
        return "<" if self.is_little_endian else ">"

    def segment(self, name: str) -> Optional[Segment]:
        for segment in self.segments:
            if segment.name == name:
                return segment
        return None

    @property
    def load_commands_end(self) -> int:
        return self.header_size + self.sizeofcmds

    @property
    def first_data_offset(self) -> int:
        """Offset of the first section data; load commands must end before it."""
        offsets = [
            s.first_section_offset for s in self.segments if s.first_section_offset
        ]
        if offsets:
            return min(offsets)
        offsets = [s.fileoff for s in self.segments if s.fileoff and s.filesize]
        return min(offsets) if offsets else self.size


@dataclass
class MachOBinary:
    """
    Parsed Mach-O binary information.

    Attributes:
        is_fat: Whether this is a FAT (universal) binary.
        slices: Architecture slices.
    """

    is_fat: bool
    slices: list[MachOSlice]


class MachOParser:
    """
    Parser for Mach-O binary files.

    Example:
        binary = MachOParser.parse(data)
        for s in binary.slices:
            print(hex(s.cpu_type), s.code_signature)
    """

    @staticmethod
    def parse(data: bytes) -> MachOBinary:
        """
        Parse a Mach-O binary from bytes.

        Raises:
            MachOParseError: If the data is not a Mach-O file.
        """
        if len(data) < 4:
            raise MachOParseError("data too small to be a Mach-O binary")

        magic = struct.unpack("<I", data[:4])[0]
        if magic in (MachOMagic.FAT_MAGIC_64, MachOMagic.FAT_CIGAM_64):
            raise MachOParseError("64-bit FAT headers are not supported")
        if magic in (MachOMagic.FAT_MAGIC, MachOMagic.FAT_CIGAM):
            return MachOParser._parse_fat(data)

        return MachOBinary(is_fat=False, slices=[MachOParser._parse_slice(data, 0)])

    @staticmethod
    def is_macho(data: bytes) -> bool:
        """Whether data starts with a thin or FAT Mach-O magic."""
        if len(data) < 4:
            return False
        magic = struct.unpack("<I", data[:4])[0]
        return magic in {m.value for m in MachOMagic}

    @staticmethod
    def _parse_fat(data: bytes) -> MachOBinary:
        """Parse a FAT (universal) binary. FAT headers are always big-endian."""
        if len(data) < FAT_HEADER_SIZE:
            raise MachOParseError("truncated FAT header")
        nfat_arch = struct.unpack(">I", data[4:8])[0]
        logger.debug(f"FAT binary with {nfat_arch} architectures")

        slices = []
        offset = FAT_HEADER_SIZE
        for _ in range(nfat_arch):
            if offset + FAT_ARCH_SIZE > len(data):
                raise MachOParseError("truncated FAT architecture table")
            cpu_type, cpu_subtype, arch_offset, arch_size, arch_align = struct.unpack(
                ">IIIII", data[offset : offset + FAT_ARCH_SIZE]
            )
            offset += FAT_ARCH_SIZE

            if arch_offset + arch_size > len(data):
                raise MachOParseError("FAT slice extends past end of file")
            slice_info = MachOParser._parse_slice(
                data[arch_offset : arch_offset + arch_size], arch_offset
            )
            slice_info.align = arch_align
            slices.append(slice_info)

        return MachOBinary(is_fat=True, slices=slices)

    @staticmethod
    def _parse_slice(data: bytes, file_offset: int) -> MachOSlice:
        """Parse the header and load commands of a thin slice."""
        if len(data) < MACH_HEADER_SIZE:
            raise MachOParseError("data too small for Mach-O header")

        magic = struct.unpack("<I", data[:4])[0]
        if magic == MachOMagic.MH_MAGIC_64:
            is_64bit, endian = True, "<"
        elif magic == MachOMagic.MH_CIGAM_64:
            is_64bit, endian = True, ">"
        elif magic == MachOMagic.MH_MAGIC:
            is_64bit, endian = False, "<"
        elif magic == MachOMagic.MH_CIGAM:
            is_64bit, endian = False, ">"
        else:
            raise MachOParseError(f"invalid Mach-O magic 0x{magic:08x}")

        header_size = MACH_HEADER_64_SIZE if is_64bit else MACH_HEADER_SIZE
        if len(data) < header_size:
            raise MachOParseError("data too small for Mach-O header")

        _, cpu_type, cpu_subtype, filetype, ncmds, sizeofcmds, _ = struct.unpack(
            f"{endian}7I", data[:MACH_HEADER_SIZE]
        )
        if header_size + sizeofcmds > len(data):
            raise MachOParseError("load commands extend past end of file")

        slice_info = MachOSlice(
            offset=file_offset,
            size=len(data),
            cpu_type=cpu_type,
            cpu_subtype=cpu_subtype,
            is_64bit=is_64bit,
            is_little_endian=endian == "<",
            filetype=filetype,
            ncmds=ncmds,
            sizeofcmds=sizeofcmds,
        )

        offset = header_size
        for _ in range(ncmds):
            if offset + 8 > header_size + sizeofcmds:
                raise MachOParseError("truncated load command")
            cmd, cmdsize = struct.unpack(f"{endian}II", data[offset : offset + 8])
            if cmdsize < 8:
                raise MachOParseError(f"invalid load command size {cmdsize}")

            if cmd in (LoadCommand.LC_SEGMENT, LoadCommand.LC_SEGMENT_64):
                slice_info.segments.append(
                    MachOParser._parse_segment(data, offset, endian, cmd == LoadCommand.LC_SEGMENT_64)
                )
            elif cmd == LoadCommand.LC_CODE_SIGNATURE:
                dataoff, datasize = struct.unpack(
                    f"{endian}II", data[offset + 8 : offset + 16]
                )
                slice_info.code_signature = CodeSignatureCommand(offset, dataoff, datasize)

            offset += cmdsize

        return slice_info

    @staticmethod
    def _parse_segment(data: bytes, offset: int, endian: str, is_64bit: bool) -> Segment:
        """Parse an LC_SEGMENT(_64) command and the offsets of its sections."""
        name_raw = data[offset + 8 : offset + 24]
        name = name_raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")

        if is_64bit:
            _, vmsize, fileoff, filesize, _, _, nsects, _ = struct.unpack(
                f"{endian}QQQQIIII", data[offset + 24 : offset + SEGMENT_64_CMD_SIZE]
            )
            section_start, section_size = offset + SEGMENT_64_CMD_SIZE, SECTION_64_SIZE
            # offset field follows sectname, segname, addr, size
            offset_field = 48
        else:
            _, vmsize, fileoff, filesize, _, _, nsects, _ = struct.unpack(
                f"{endian}IIIIIIII", data[offset + 24 : offset + SEGMENT_CMD_SIZE]
            )
            section_start, section_size = offset + SEGMENT_CMD_SIZE, SECTION_SIZE
            offset_field = 40

        first_section = None
        for i in range(nsects):
            position = section_start + i * section_size + offset_field
            section_offset = struct.unpack(f"{endian}I", data[position : position + 4])[0]
            if section_offset and (first_section is None or section_offset < first_section):
                first_section = section_offset

        return Segment(
            name=name,
            cmd_offset=offset,
            vmsize=vmsize,
            fileoff=fileoff,
            filesize=filesize,
            first_section_offset=first_section,
        )


@dataclass
class SignatureLayout:
    """Where the signature goes in a prepared slice."""

    code_limit: int
    signature_size: int
    text_offset: int
    text_size: int
    filetype: int


def prepare_slice(data: bytes, signature_size: Callable[[int], int]) -> tuple[bytearray, SignatureLayout]:
    """
    Rewrite a thin slice so a signature of the reported size fits at its end.

    Any existing signature is cut off. When the slice has no
    LC_CODE_SIGNATURE, one is appended after the existing load commands,
    provided there is room before the first section. __LINKEDIT is grown
    to cover the signature.

    Args:
        data: Thin Mach-O slice.
        signature_size: Returns the bytes to reserve for a given code limit.

    Returns:
        The rewritten slice truncated at the code limit, and its layout.

    Raises:
        MachOParseError: If the slice cannot carry a signature.
    """
    info = MachOParser._parse_slice(data, 0)
    if not info.is_little_endian:
        raise MachOParseError("big-endian slices cannot be signed")

    linkedit = info.segment("__LINKEDIT")
    if linkedit is None:
        raise MachOParseError("no __LINKEDIT segment")

    endian = info.endian
    out = bytearray(data)

    if info.code_signature is not None:
        code_limit = info.code_signature.dataoff
        cmd_offset = info.code_signature.cmd_offset
        del out[code_limit:]
        logger.debug(f"Replacing existing signature at 0x{code_limit:x}")
    else:
        cmd_offset = info.load_commands_end
        if cmd_offset + LINKEDIT_CMD_SIZE > info.first_data_offset:
            raise MachOParseError("no room for LC_CODE_SIGNATURE")
        if any(out[cmd_offset : cmd_offset + LINKEDIT_CMD_SIZE]):
            raise MachOParseError("no room for LC_CODE_SIGNATURE")
        code_limit = align(len(out), CODE_SIGN_ALIGN)
        out.extend(b"\x00" * (code_limit - len(out)))
        struct.pack_into(
            f"{endian}II", out, 16, info.ncmds + 1, info.sizeofcmds + LINKEDIT_CMD_SIZE
        )

    if linkedit.fileoff > code_limit:
        raise MachOParseError("__LINKEDIT starts past the code limit")

    size = signature_size(code_limit)
    struct.pack_into(
        f"{endian}IIII", out, cmd_offset,
        LoadCommand.LC_CODE_SIGNATURE, LINKEDIT_CMD_SIZE, code_limit, size,
    )

    filesize = code_limit + size - linkedit.fileoff
    vmsize = align(filesize, LINKEDIT_PAGE_ALIGN)
    if info.is_64bit:
        struct.pack_into(f"{endian}Q", out, linkedit.cmd_offset + 32, vmsize)
        struct.pack_into(f"{endian}Q", out, linkedit.cmd_offset + 48, filesize)
    else:
        struct.pack_into(f"{endian}I", out, linkedit.cmd_offset + 28, vmsize)
        struct.pack_into(f"{endian}I", out, linkedit.cmd_offset + 36, filesize)

    text = info.segment("__TEXT")
    layout = SignatureLayout(
        code_limit=code_limit,
        signature_size=size,
        text_offset=text.fileoff if text else 0,
        text_size=text.filesize if text else 0,
        filetype=info.filetype,
    )
    return out, layout


def sign_macho(
    data: bytes,
    signature_size: Callable[[int], int],
    build_signature: Callable[[bytes, SignatureLayout], bytes],
) -> bytes:
    """
    Embed a code signature into every slice of a thin or FAT binary.

    Args:
        data: Mach-O file contents.
        signature_size: Returns the bytes to reserve for a code limit.
        build_signature: Builds the superblob for a prepared slice, given
            the slice bytes up to the code limit.

    Returns:
        The signed file contents.
    """
    binary = MachOParser.parse(data)

    signed_slices = []
    for s in binary.slices:
        thin = data[s.offset : s.offset + s.size]
        prepared, layout = prepare_slice(thin, signature_size)
        blob = build_signature(bytes(prepared), layout)
        if len(blob) > layout.signature_size:
            raise MachOParseError(
                f"signature of {len(blob)} bytes exceeds reserved {layout.signature_size}"
            )
        prepared.extend(blob)
        prepared.extend(b"\x00" * (layout.signature_size - len(blob)))
        signed_slices.append((s, bytes(prepared)))

    if not binary.is_fat:
        return signed_slices[0][1]
    return _join_fat(signed_slices)


def _join_fat(slices: list[tuple[MachOSlice, bytes]]) -> bytes:
    """Rebuild a FAT file around re-signed slices."""
    header = bytearray(struct.pack(">II", MachOMagic.FAT_MAGIC, len(slices)))
    offset = FAT_HEADER_SIZE + FAT_ARCH_SIZE * len(slices)
    placed = []
    for s, body in slices:
        offset = align(offset, 1 << s.align)
        header.extend(
            struct.pack(">IIIII", s.cpu_type, s.cpu_subtype, offset, len(body), s.align)
        )
        placed.append((offset, body))
        offset += len(body)

    out = bytearray(header)
    for slice_offset, body in placed:
        out.extend(b"\x00" * (slice_offset - len(out)))
        out.extend(body)
    return bytes(out)
