from __future__ import annotations

import struct

import pytest

from pe_builder import E_LFANEW, PeBuilder
from pelens.errors import E_TABLE_TRUNCATED, NotAPeFile, UnsupportedOptionalHeaderMagic
from pelens.pe import DIR_EXPORT, read_pe_image


def test_minimal_x86_image():
    image, errors = read_pe_image(PeBuilder().build())
    assert errors == []
    assert image.architecture == "x86"
    assert image.machine == 0x14C
    assert image.is_pe32_plus is False
    assert image.image_base == 0x400000
    assert image.e_lfanew == E_LFANEW
    assert [s.name for s in image.sections] == [".text"]
    assert image.export_dir.present is False
    assert image.import_dir.present is False
    assert image.delay_import_dir.present is False


def test_x64_pe32plus_image_base_is_64bit():
    image, _ = read_pe_image(PeBuilder(machine=0x8664, pe32_plus=True).build())
    assert image.architecture == "x64"
    assert image.is_pe32_plus is True
    assert image.image_base == 0x140000000


def test_arm64_machine_is_unknown_architecture():
    image, _ = read_pe_image(PeBuilder(machine=0xAA64, pe32_plus=True).build())
    assert image.architecture == "unknown"
    assert image.machine == 0xAA64


def test_data_directories_read_for_both_magics():
    for pe32_plus in (False, True):
        b = PeBuilder(pe32_plus=pe32_plus)
        b.directory(0, 0x1800, 0x40)
        b.directory(1, 0x1900, 0x28)
        b.directory(13, 0x1A00, 0x40)
        image, _ = read_pe_image(b.build())
        assert (image.export_dir.rva, image.export_dir.size) == (0x1800, 0x40)
        assert (image.import_dir.rva, image.import_dir.size) == (0x1900, 0x28)
        assert (image.delay_import_dir.rva, image.delay_import_dir.size) == (0x1A00, 0x40)


def test_directories_read_whatever_number_of_rva_and_sizes_says():
    for count in (0, 2):
        b = PeBuilder(num_rva_and_sizes=count)
        b.directory(DIR_EXPORT, 0x1800, 0x40)
        b.directory(13, 0x1A00, 0x40)
        image, errors = read_pe_image(b.build())
        assert errors == []
        assert (image.export_dir.rva, image.export_dir.size) == (0x1800, 0x40)
        assert (image.delay_import_dir.rva, image.delay_import_dir.size) == (0x1A00, 0x40)


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"hello world",
        b"ZM" + b"\x00" * 0x100,
    ],
)
def test_not_a_pe_file(data):
    with pytest.raises(NotAPeFile):
        read_pe_image(data)


def test_e_lfanew_out_of_range():
    data = bytearray(PeBuilder().build())
    struct.pack_into("<I", data, 0x3C, len(data) + 0x100)
    with pytest.raises(NotAPeFile) as exc:
        read_pe_image(bytes(data))
    assert exc.value.as_error()["code"] == "E_PE_NOT_A_PE_FILE"


def test_bad_nt_signature():
    data = bytearray(PeBuilder().build())
    data[E_LFANEW : E_LFANEW + 4] = b"NE\x00\x00"
    with pytest.raises(NotAPeFile):
        read_pe_image(bytes(data))


def test_truncated_coff_header_is_fatal():
    data = PeBuilder().build()[: E_LFANEW + 10]
    with pytest.raises(NotAPeFile):
        read_pe_image(data)


def test_unsupported_optional_header_magic():
    data = bytearray(PeBuilder().build())
    struct.pack_into("<H", data, E_LFANEW + 24, 0x107)  # ROM image
    with pytest.raises(UnsupportedOptionalHeaderMagic) as exc:
        read_pe_image(bytes(data))
    assert exc.value.context["opt_magic"] == 0x107


def test_truncated_section_table_is_local():
    data = bytearray(PeBuilder().build())
    struct.pack_into("<H", data, E_LFANEW + 6, 3)  # claims 3 sections
    sect_off = E_LFANEW + 24 + 0xE0
    image, errors = read_pe_image(bytes(data[: sect_off + 40 + 12]))
    assert len(image.sections) == 1
    assert [e["code"] for e in errors] == [E_TABLE_TRUNCATED]


def test_section_count_clamped():
    data = bytearray(PeBuilder().build())
    struct.pack_into("<H", data, E_LFANEW + 6, 5)
    image, errors = read_pe_image(bytes(data), max_sections=2)
    assert len(image.sections) == 2
    assert errors[0]["code"] == "E_PE_SECTION_COUNT_CLAMPED"
