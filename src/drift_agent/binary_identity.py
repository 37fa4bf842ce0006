"""
Binary Identity Reader

Reads version, vendor and build information from deployable PE binaries
(.NET assemblies) by walking their headers directly:

- the PE/COFF headers and section table, to map RVAs to file offsets
- the RT_VERSION resource (VS_VERSIONINFO), for version strings and flags
- the CLI header and ``#~`` metadata stream, for the assembly version
- the COFF linker timestamp, for the build time
"""

import logging
import ntpath
import struct
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .models import BinaryIdentity, VersionInfo

logger = logging.getLogger(__name__)

PE_HEADER_OFFSET = 0x3C
LINKER_TIMESTAMP_OFFSET = 8
HEADER_READ_SIZE = 2048
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

RESOURCE_DIRECTORY = 2
CLR_DIRECTORY = 14
RT_VERSION = 16

VS_FIXEDFILEINFO_SIGNATURE = 0xFEEF04BD
VS_FF_DEBUG = 0x1
VS_FF_PRERELEASE = 0x2

METADATA_SIGNATURE = 0x424A5342  # "BSJB"
ASSEMBLY_TABLE = 0x20


class FailureKind(str, Enum):
    UNREADABLE = "unreadable"
    MALFORMED_HEADER = "malformed_header"


class BinaryIdentityError(Exception):
    """Identity could not be resolved for a binary."""

    def __init__(self, kind: FailureKind, path: str, reason: str):
        super().__init__(f"{kind.value}: {path}: {reason}")
        self.kind = kind
        self.path = path
        self.reason = reason


class MalformedImage(ValueError):
    pass


def _align4(offset: int) -> int:
    return (offset + 3) & ~3


class PEImage:
    """Minimal PE/COFF image reader over raw bytes."""

    def __init__(self, data: bytes):
        self.data = data
        if data[:2] != b"MZ":
            raise MalformedImage("missing DOS signature")
        pe_offset = self.u32(PE_HEADER_OFFSET)
        if self.data[pe_offset:pe_offset + 4] != b"PE\0\0":
            raise MalformedImage("missing PE signature")

        coff = pe_offset + 4
        _, section_count, self.timestamp, _, _, optional_size, _ = self.unpack("<HHIIIHH", coff)
        optional = coff + 20
        magic = self.u16(optional)
        if magic == 0x10B:
            rva_count_offset = optional + 92
        elif magic == 0x20B:
            rva_count_offset = optional + 108
        else:
            raise MalformedImage(f"unknown optional header magic 0x{magic:x}")

        rva_count = min(self.u32(rva_count_offset), 16)
        self.directories: List[Tuple[int, int]] = [
            self.unpack("<II", rva_count_offset + 4 + 8 * i) for i in range(rva_count)
        ]

        # (virtual address, virtual size, raw size, raw pointer)
        self.sections: List[Tuple[int, int, int, int]] = []
        table = optional + optional_size
        for i in range(section_count):
            _, vsize, vaddr, raw_size, raw_ptr = self.unpack("<8sIIII", table + 40 * i)
            self.sections.append((vaddr, vsize, raw_size, raw_ptr))

    def unpack(self, fmt: str, offset: int) -> tuple:
        if offset < 0:
            raise MalformedImage(f"negative offset {offset}")
        try:
            return struct.unpack_from(fmt, self.data, offset)
        except struct.error as e:
            raise MalformedImage(f"truncated at offset {offset}: {e}") from e

    def u16(self, offset: int) -> int:
        return self.unpack("<H", offset)[0]

    def u32(self, offset: int) -> int:
        return self.unpack("<I", offset)[0]

    def directory(self, index: int) -> Optional[Tuple[int, int]]:
        if index >= len(self.directories):
            return None
        rva, size = self.directories[index]
        if rva == 0:
            return None
        return rva, size

    def offset(self, rva: int) -> int:
        for vaddr, vsize, raw_size, raw_ptr in self.sections:
            if vaddr <= rva < vaddr + max(vsize, raw_size):
                return rva - vaddr + raw_ptr
        raise MalformedImage(f"RVA 0x{rva:x} outside all sections")


# Version resource

def _resource_entries(image: PEImage, directory: int):
    named, ids = image.unpack("<HH", directory + 12)
    for i in range(named + ids):
        yield image.unpack("<II", directory + 16 + 8 * i)


def _find_version_resource(image: PEImage) -> Optional[bytes]:
    resources = image.directory(RESOURCE_DIRECTORY)
    if not resources:
        return None
    base = image.offset(resources[0])

    target = None
    for name, entry in _resource_entries(image, base):
        if name == RT_VERSION:
            target = entry
            break
    if target is None:
        return None

    # type -> name -> language -> data entry
    for _ in range(2):
        if not target & 0x80000000:
            raise MalformedImage("resource directory entry is not a subdirectory")
        entries = list(_resource_entries(image, base + (target & 0x7FFFFFFF)))
        if not entries:
            return None
        target = entries[0][1]
    if target & 0x80000000:
        raise MalformedImage("resource data entry is a subdirectory")

    data_rva, size = image.unpack("<II", base + target)
    start = image.offset(data_rva)
    data = image.data[start:start + size]
    if len(data) < size:
        raise MalformedImage("truncated version resource")
    return data


def _read_block(data: bytes, offset: int) -> Tuple[int, int, str, int]:
    """Read a VS_VERSIONINFO style block header: (length, value length, key, value offset)."""
    length, value_length, _ = struct.unpack_from("<HHH", data, offset)
    end = offset + 6
    while data[end:end + 2] != b"\0\0":
        if end >= len(data):
            raise MalformedImage("unterminated version block key")
        end += 2
    key = data[offset + 6:end].decode("utf-16-le", errors="replace")
    return length, value_length, key, _align4(end + 2)


def _children(data: bytes, start: int, end: int):
    offset = start
    while offset < end:
        length = struct.unpack_from("<H", data, offset)[0]
        if length == 0:
            break
        yield offset, length
        offset = _align4(offset + length)


def parse_version_resource(data: bytes) -> Dict[str, object]:
    """
    Parse a VS_VERSIONINFO resource.

    Returns:
        {
            'strings': Dict[str, str],        # first StringTable
            'file_version': Optional[str],    # from VS_FIXEDFILEINFO
            'product_version': Optional[str],
            'flags': int,                     # FileFlags & FileFlagsMask
        }
    """
    try:
        length, value_length, key, value_offset = _read_block(data, 0)
        if key != "VS_VERSION_INFO":
            raise MalformedImage(f"unexpected version block key {key!r}")

        info: Dict[str, object] = {"strings": {}, "file_version": None, "product_version": None, "flags": 0}
        if value_length >= 52:
            fixed = struct.unpack_from("<13I", data, value_offset)
            if fixed[0] != VS_FIXEDFILEINFO_SIGNATURE:
                raise MalformedImage("bad VS_FIXEDFILEINFO signature")
            info["file_version"] = _fixed_version(fixed[2], fixed[3])
            info["product_version"] = _fixed_version(fixed[4], fixed[5])
            info["flags"] = fixed[7] & fixed[6]

        end = min(length, len(data))
        for child, child_length in _children(data, _align4(value_offset + value_length), end):
            _, _, child_key, child_value = _read_block(data, child)
            if child_key != "StringFileInfo":
                continue
            for table, table_length in _children(data, child_value, child + child_length):
                _, _, _, table_value = _read_block(data, table)
                for entry, entry_length in _children(data, table_value, table + table_length):
                    _, _, name, value_at = _read_block(data, entry)
                    raw = data[value_at:entry + entry_length]
                    info["strings"][name] = raw.decode("utf-16-le", errors="replace").split("\0", 1)[0]
                break
        return info
    except struct.error as e:
        raise MalformedImage(f"truncated version resource: {e}") from e


def _fixed_version(ms: int, ls: int) -> str:
    return f"{ms >> 16}.{ms & 0xFFFF}.{ls >> 16}.{ls & 0xFFFF}"


# CLI metadata

# Coded index kinds: (tag bits, tables)
CODED_INDEXES = {
    "TypeDefOrRef": (2, [0x02, 0x01, 0x1B]),
    "HasConstant": (2, [0x04, 0x08, 0x17]),
    "HasCustomAttribute": (5, [0x06, 0x04, 0x01, 0x02, 0x08, 0x09, 0x0A, 0x00, 0x0E, 0x17, 0x14,
                               0x11, 0x1A, 0x1B, 0x20, 0x23, 0x26, 0x27, 0x28, 0x2A, 0x2C, 0x2B]),
    "HasFieldMarshal": (1, [0x04, 0x08]),
    "HasDeclSecurity": (2, [0x02, 0x06, 0x20]),
    "MemberRefParent": (3, [0x02, 0x01, 0x1A, 0x06, 0x1B]),
    "HasSemantics": (1, [0x14, 0x17]),
    "MethodDefOrRef": (1, [0x06, 0x0A]),
    "MemberForwarded": (1, [0x04, 0x06]),
    "CustomAttributeType": (3, [0x06, 0x0A]),
    "ResolutionScope": (2, [0x00, 0x1A, 0x23, 0x01]),
}

# Columns of the tables preceding Assembly (0x20). Integers are fixed widths,
# "s"/"g"/"b" are string/guid/blob heap indexes, ("t", n) is a simple index
# into table n and ("c", kind) a coded index.
TABLE_SCHEMAS = {
    0x00: [2, "s", "g", "g", "g"],                                            # Module
    0x01: [("c", "ResolutionScope"), "s", "s"],                                # TypeRef
    0x02: [4, "s", "s", ("c", "TypeDefOrRef"), ("t", 0x04), ("t", 0x06)],      # TypeDef
    0x03: [("t", 0x04)],                                                       # FieldPtr
    0x04: [2, "s", "b"],                                                       # Field
    0x05: [("t", 0x06)],                                                       # MethodPtr
    0x06: [4, 2, 2, "s", "b", ("t", 0x08)],                                    # MethodDef
    0x07: [("t", 0x08)],                                                       # ParamPtr
    0x08: [2, 2, "s"],                                                         # Param
    0x09: [("t", 0x02), ("c", "TypeDefOrRef")],                                # InterfaceImpl
    0x0A: [("c", "MemberRefParent"), "s", "b"],                                # MemberRef
    0x0B: [2, ("c", "HasConstant"), "b"],                                      # Constant
    0x0C: [("c", "HasCustomAttribute"), ("c", "CustomAttributeType"), "b"],    # CustomAttribute
    0x0D: [("c", "HasFieldMarshal"), "b"],                                     # FieldMarshal
    0x0E: [2, ("c", "HasDeclSecurity"), "b"],                                  # DeclSecurity
    0x0F: [2, 4, ("t", 0x02)],                                                 # ClassLayout
    0x10: [4, ("t", 0x04)],                                                    # FieldLayout
    0x11: ["b"],                                                               # StandAloneSig
    0x12: [("t", 0x02), ("t", 0x14)],                                          # EventMap
    0x13: [("t", 0x14)],                                                       # EventPtr
    0x14: [2, "s", ("c", "TypeDefOrRef")],                                     # Event
    0x15: [("t", 0x02), ("t", 0x17)],                                          # PropertyMap
    0x16: [("t", 0x17)],                                                       # PropertyPtr
    0x17: [2, "s", "b"],                                                       # Property
    0x18: [2, ("t", 0x06), ("c", "HasSemantics")],                             # MethodSemantics
    0x19: [("t", 0x02), ("c", "MethodDefOrRef"), ("c", "MethodDefOrRef")],     # MethodImpl
    0x1A: ["s"],                                                               # ModuleRef
    0x1B: ["b"],                                                               # TypeSpec
    0x1C: [2, ("c", "MemberForwarded"), "s", ("t", 0x1A)],                     # ImplMap
    0x1D: [4, ("t", 0x04)],                                                    # FieldRVA
    0x1E: [4, 4],                                                              # EncLog
    0x1F: [4],                                                                 # EncMap
}


def _row_size(schema, rows: Dict[int, int], heap_sizes: int) -> int:
    heap_widths = {
        "s": 4 if heap_sizes & 0x01 else 2,
        "g": 4 if heap_sizes & 0x02 else 2,
        "b": 4 if heap_sizes & 0x04 else 2,
    }
    size = 0
    for column in schema:
        if isinstance(column, int):
            size += column
        elif isinstance(column, str):
            size += heap_widths[column]
        elif column[0] == "t":
            size += 4 if rows.get(column[1], 0) >= 1 << 16 else 2
        else:
            bits, tables = CODED_INDEXES[column[1]]
            largest = max(rows.get(t, 0) for t in tables)
            size += 4 if largest >= 1 << (16 - bits) else 2
    return size


def read_assembly_version(image: PEImage) -> str:
    """Read Major.Minor.Build.Revision from the Assembly metadata table."""
    clr = image.directory(CLR_DIRECTORY)
    if not clr:
        raise MalformedImage("no CLI header, not a managed assembly")
    cor = image.offset(clr[0])
    metadata_rva, _ = image.unpack("<II", cor + 8)
    root = image.offset(metadata_rva)
    if image.u32(root) != METADATA_SIGNATURE:
        raise MalformedImage("bad metadata signature")

    version_length = image.u32(root + 12)
    cursor = root + 16 + version_length
    _, stream_count = image.unpack("<HH", cursor)
    cursor += 4
    tables = None
    for _ in range(stream_count):
        offset, _ = image.unpack("<II", cursor)
        name_end = image.data.find(b"\0", cursor + 8)
        if name_end < 0:
            raise MalformedImage("unterminated stream name")
        name = image.data[cursor + 8:name_end]
        if name in (b"#~", b"#-"):
            tables = root + offset
        cursor = _align4(name_end + 1)
    if tables is None:
        raise MalformedImage("no metadata tables stream")

    _, _, _, heap_sizes, _, valid, _ = image.unpack("<IBBBBQQ", tables)
    if not valid & (1 << ASSEMBLY_TABLE):
        raise MalformedImage("no Assembly table")
    cursor = tables + 24
    rows: Dict[int, int] = {}
    for table in range(64):
        if valid & (1 << table):
            rows[table] = image.u32(cursor)
            cursor += 4
    if heap_sizes & 0x40:
        cursor += 4

    for table in range(ASSEMBLY_TABLE):
        if rows.get(table):
            cursor += rows[table] * _row_size(TABLE_SCHEMAS[table], rows, heap_sizes)
    _, major, minor, build, revision = image.unpack("<IHHHH", cursor)
    return f"{major}.{minor}.{build}.{revision}"


# Linker timestamp

def read_build_timestamp(path: Union[str, Path]) -> datetime:
    """
    Recover the build time from the COFF header linker timestamp.

    Only the first 2KB are read; the PE header offset pointer at 0x3C is
    followed and the seconds-since-epoch value 8 bytes past it converted to UTC.
    """
    with open(path, "rb") as f:
        header = f.read(HEADER_READ_SIZE)
    try:
        pe_offset = struct.unpack_from("<i", header, PE_HEADER_OFFSET)[0]
        if pe_offset < 0:
            raise MalformedImage(f"negative PE header offset {pe_offset}")
        seconds = struct.unpack_from("<I", header, pe_offset + LINKER_TIMESTAMP_OFFSET)[0]
    except struct.error as e:
        raise MalformedImage(f"header too short for linker timestamp: {e}") from e
    return EPOCH + timedelta(seconds=seconds)


def read_identity(path: Union[str, Path]) -> BinaryIdentity:
    """
    Resolve the identity of a binary.

    Raises:
        BinaryIdentityError: the file cannot be read, or its headers or
            metadata are malformed or absent.
    """
    path = str(path)
    try:
        data = Path(path).read_bytes()
        build_timestamp = read_build_timestamp(path)
    except OSError as e:
        raise BinaryIdentityError(FailureKind.UNREADABLE, path, str(e)) from e
    except MalformedImage as e:
        raise BinaryIdentityError(FailureKind.MALFORMED_HEADER, path, str(e)) from e

    try:
        image = PEImage(data)
        resource = _find_version_resource(image)
        version_info = parse_version_resource(resource) if resource else None
        assembly_version = read_assembly_version(image)
    except (MalformedImage, struct.error, UnicodeDecodeError) as e:
        raise BinaryIdentityError(FailureKind.MALFORMED_HEADER, path, str(e)) from e

    strings: Dict[str, str] = {}
    flags = 0
    file_version = product_version = ""
    if version_info:
        strings = version_info["strings"]
        flags = version_info["flags"]
        file_version = strings.get("FileVersion") or version_info["file_version"] or ""
        product_version = strings.get("ProductVersion") or version_info["product_version"] or ""

    name = ntpath.splitext(ntpath.basename(path))[0]
    logger.debug(f"Processing binary: {name}, from: {ntpath.dirname(path)}")
    return BinaryIdentity(
        name=name,
        path=path,
        product=strings.get("ProductName", ""),
        company=strings.get("CompanyName", ""),
        is_debug=bool(flags & VS_FF_DEBUG),
        is_prerelease=bool(flags & VS_FF_PRERELEASE),
        version=VersionInfo(
            assembly_version=assembly_version,
            file_version=file_version,
            product_version=product_version,
            build_timestamp=build_timestamp,
        ),
    )
