"""Tests for binary identity resolution."""

import pytest

from drift_agent.binary_identity import (
    BinaryIdentityError,
    FailureKind,
    read_build_timestamp,
    read_identity,
)
from conftest import BUILD_TIME, build_pe_image


def test_reads_identity_fields(tmp_path, make_assembly):
    path = make_assembly(tmp_path / "Contoso.Orders.dll", assembly_version=(3, 1, 0, 7))

    identity = read_identity(path)

    assert identity.name == "Contoso.Orders"
    assert identity.path == str(path)
    assert identity.company == "Contoso"
    assert identity.product == "Contoso Platform"
    assert identity.version.assembly_version == "3.1.0.7"
    assert identity.version.file_version == "1.2.3.4"
    assert identity.version.product_version == "1.2.3.4-beta"
    assert identity.version.build_timestamp == BUILD_TIME
    assert identity.is_debug is False
    assert identity.is_prerelease is False


def test_debug_and_prerelease_flags(tmp_path, make_assembly):
    path = make_assembly(tmp_path / "Contoso.Debug.dll", flags=0x1 | 0x2)

    identity = read_identity(path)

    assert identity.is_debug is True
    assert identity.is_prerelease is True


def test_identity_is_deterministic(tmp_path, make_assembly):
    path = make_assembly(tmp_path / "Contoso.Core.dll")

    assert read_identity(path) == read_identity(path)


def test_missing_version_strings_fall_back_to_fixed_info(tmp_path, make_assembly):
    path = make_assembly(tmp_path / "Contoso.Bare.dll", strings={"CompanyName": "Contoso"}, fixed_version="5.6.7.8")

    identity = read_identity(path)

    assert identity.version.file_version == "5.6.7.8"
    assert identity.version.product_version == "5.6.7.8"
    assert identity.product == ""


def test_no_version_resource_gives_empty_strings(tmp_path, make_assembly):
    path = make_assembly(tmp_path / "Contoso.NoRes.dll", version_resource=False)

    identity = read_identity(path)

    assert identity.version.assembly_version == "1.2.3.4"
    assert identity.version.file_version == ""
    assert identity.company == ""
    assert identity.is_debug is False


def test_build_timestamp_from_header(tmp_path, make_assembly):
    path = make_assembly(tmp_path / "Contoso.Time.dll")

    assert read_build_timestamp(path) == BUILD_TIME


def test_missing_file_is_unreadable(tmp_path):
    with pytest.raises(BinaryIdentityError) as excinfo:
        read_identity(tmp_path / "missing.dll")

    assert excinfo.value.kind == FailureKind.UNREADABLE


def test_truncated_file_is_malformed(tmp_path):
    path = tmp_path / "Contoso.Truncated.dll"
    path.write_bytes(build_pe_image()[:0x90])

    with pytest.raises(BinaryIdentityError) as excinfo:
        read_identity(path)

    assert excinfo.value.kind == FailureKind.MALFORMED_HEADER


def test_garbage_file_is_malformed(tmp_path):
    path = tmp_path / "notes.dll"
    path.write_bytes(b"just some text, not a binary")

    with pytest.raises(BinaryIdentityError) as excinfo:
        read_identity(path)

    assert excinfo.value.kind == FailureKind.MALFORMED_HEADER


def test_unmanaged_binary_is_malformed(tmp_path, make_assembly):
    path = make_assembly(tmp_path / "native.dll", managed=False)

    with pytest.raises(BinaryIdentityError) as excinfo:
        read_identity(path)

    assert excinfo.value.kind == FailureKind.MALFORMED_HEADER
    assert "managed" in excinfo.value.reason


def test_invalid_version_key_is_malformed(tmp_path):
    image = build_pe_image()
    key = "VS_VERSION_INFO".encode("utf-16-le")
    at = image.index(key)
    path = tmp_path / "Contoso.Surrogate.dll"
    path.write_bytes(image[:at] + b"\x00\xd8" + image[at + 2:])

    with pytest.raises(BinaryIdentityError) as excinfo:
        read_identity(path)

    assert excinfo.value.kind == FailureKind.MALFORMED_HEADER
