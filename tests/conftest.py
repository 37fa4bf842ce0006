"""Pytest configuration and shared fixtures."""

import json
import struct
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import pytest

from drift_agent.datadir import DataDir
from drift_agent.discovery import DiscoveryContext
from drift_agent.models import Host, Role, SearchPath

pytest_plugins = ("pytest_asyncio",)

BUILD_TIME = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)

SECTION_RVA = 0x2000
SECTION_RAW = 0x200
METADATA_AT = 0x50
RESOURCES_AT = 0x100


def _pad4(data: bytes) -> bytes:
    return data + b"\0" * (-len(data) % 4)


def _vs_block(key: str, value: bytes = b"", children: Sequence[bytes] = (), text: bool = False) -> bytes:
    """One VS_VERSIONINFO style block: header, key, value and children, 4-byte aligned."""
    value_length = len(value) // 2 if text else len(value)
    body = _pad4(struct.pack("<HHH", 0, value_length, 1 if text else 0) + key.encode("utf-16-le") + b"\0\0")
    body = _pad4(body + value)
    for child in children:
        body += _pad4(child)
    return struct.pack("<H", len(body)) + body[2:]


def _version(value: str) -> Tuple[int, int]:
    parts = [int(p) for p in value.split(".")] + [0, 0, 0, 0]
    return (parts[0] << 16) | parts[1], (parts[2] << 16) | parts[3]


def _version_resource(strings: Dict[str, str], fixed_version: str, flags: int) -> bytes:
    ms, ls = _version(fixed_version)
    fixed = struct.pack(
        "<13I", 0xFEEF04BD, 0x10000, ms, ls, ms, ls, 0x3F, flags, 0x4, 0x2, 0, 0, 0
    )
    entries = [
        _vs_block(name, (value + "\0").encode("utf-16-le"), text=True)
        for name, value in strings.items()
    ]
    table = _vs_block("040904b0", children=entries, text=True)
    string_info = _vs_block("StringFileInfo", children=[table], text=True)
    return _vs_block("VS_VERSION_INFO", fixed, children=[string_info])


def _resource_tree(version_data: bytes, rva: int) -> bytes:
    def directory(entry_id: int, offset: int) -> bytes:
        return struct.pack("<IIHHHH", 0, 0, 0, 0, 0, 1) + struct.pack("<II", entry_id, offset)

    tree = directory(16, 0x80000000 | 24)
    tree += directory(1, 0x80000000 | 48)
    tree += directory(0x409, 72)
    tree += struct.pack("<IIII", rva + 88, len(version_data), 0, 0)
    return tree + version_data


def _metadata(version: Tuple[int, int, int, int]) -> bytes:
    tables = struct.pack("<IBBBBQQ", 0, 2, 0, 0, 1, (1 << 0x00) | (1 << 0x20), 0)
    tables += struct.pack("<II", 1, 1)
    tables += struct.pack("<HHHHH", 0, 1, 1, 0, 0)  # Module
    tables += struct.pack("<IHHHHIHHH", 0x8004, *version, 0, 0, 1, 0)  # Assembly
    root = struct.pack("<IHHII", 0x424A5342, 1, 1, 0, 12) + b"v4.0.30319\0\0"
    root += struct.pack("<HH", 0, 1)
    root += struct.pack("<II", 44, len(tables)) + b"#~\0\0"
    return root + tables


def build_pe_image(
    assembly_version: Tuple[int, int, int, int] = (1, 2, 3, 4),
    strings: Optional[Dict[str, str]] = None,
    fixed_version: str = "1.2.3.4",
    flags: int = 0,
    timestamp: datetime = BUILD_TIME,
    managed: bool = True,
    version_resource: bool = True,
) -> bytes:
    """A minimal 32-bit PE image with optional CLI metadata and version resource."""
    if strings is None:
        strings = {
            "CompanyName": "Contoso",
            "ProductName": "Contoso Platform",
            "FileVersion": fixed_version,
            "ProductVersion": fixed_version + "-beta",
        }

    section = bytearray(RESOURCES_AT)
    directories = [(0, 0)] * 16
    if managed:
        metadata = _metadata(assembly_version)
        section[0:72] = struct.pack("<IHHII", 72, 2, 5, SECTION_RVA + METADATA_AT, len(metadata)) + b"\0" * 56
        section[METADATA_AT:METADATA_AT + len(metadata)] = metadata
        directories[14] = (SECTION_RVA, 72)
    if version_resource:
        tree = _resource_tree(_version_resource(strings, fixed_version, flags), SECTION_RVA + RESOURCES_AT)
        section += tree
        directories[2] = (SECTION_RVA + RESOURCES_AT, len(tree))
    raw_size = len(section) + (-len(section) % 0x200)
    section += b"\0" * (raw_size - len(section))

    image = bytearray(SECTION_RAW)
    image[0:2] = b"MZ"
    struct.pack_into("<I", image, 0x3C, 0x80)
    image[0x80:0x84] = b"PE\0\0"
    struct.pack_into("<HHIIIHH", image, 0x84, 0x14C, 1, int(timestamp.timestamp()), 0, 0, 224, 0x2102)
    struct.pack_into("<H", image, 0x98, 0x10B)
    struct.pack_into("<I", image, 0x98 + 92, 16)
    for i, (rva, size) in enumerate(directories):
        struct.pack_into("<II", image, 0x98 + 96 + 8 * i, rva, size)
    struct.pack_into("<8sIIII", image, 0x178, b".text", len(section), SECTION_RVA, raw_size, SECTION_RAW)
    return bytes(image) + bytes(section)


@pytest.fixture
def make_assembly():
    """Write a PE image to a path, creating parent directories."""
    def make(path: Path, **kwargs) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_pe_image(**kwargs))
        return path
    return make


@pytest.fixture
def data_dir(tmp_path: Path) -> DataDir:
    return DataDir(tmp_path / "data")


@pytest.fixture
def host() -> Host:
    return Host("host1", "corp.local")


@pytest.fixture
def add_search_path(data_dir: DataDir):
    """Register a search path record in the data directory."""
    def add(host: Host, role: Role, environment: str, share: Path, path: Optional[str] = None) -> SearchPath:
        search_path = SearchPath(host=host, role=role, environment=environment, share=str(share), path=path)
        file = data_dir.search_path_dir / f"{host}.{environment}.{role.value}.json"
        data_dir.write_json(file, search_path)
        return search_path
    return add


@pytest.fixture
def prefixes(data_dir: DataDir):
    def write(values):
        data_dir.prefixes_file.parent.mkdir(parents=True, exist_ok=True)
        data_dir.prefixes_file.write_text(json.dumps(values))
        return values
    return write


@pytest.fixture
def ctx(data_dir: DataDir) -> DiscoveryContext:
    return DiscoveryContext(data_dir=data_dir, workers=2)
