from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pelens.errors import (
    E_SECTION_COUNT_CLAMPED,
    E_TABLE_TRUNCATED,
    NotAPeFile,
    UnsupportedOptionalHeaderMagic,
    err,
)

IMAGE_DOS_SIGNATURE = b"MZ"
IMAGE_NT_SIGNATURE = b"PE\x00\x00"

DOS_HEADER_SIZE = 0x40
COFF_HEADER_SIZE = 20
SECTION_HEADER_SIZE = 40

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B

MACHINE_I386 = 0x014C
MACHINE_AMD64 = 0x8664

ARCH_X86 = "x86"
ARCH_X64 = "x64"
ARCH_UNKNOWN = "unknown"

# Data directory indices
DIR_EXPORT = 0
DIR_IMPORT = 1
DIR_DELAY_IMPORT = 13


def _u16(data: bytes, off: int) -> Optional[int]:
    if off < 0 or off + 2 > len(data):
        return None
    return struct.unpack_from("<H", data, off)[0]


def _u32(data: bytes, off: int) -> Optional[int]:
    if off < 0 or off + 4 > len(data):
        return None
    return struct.unpack_from("<I", data, off)[0]


def _u64(data: bytes, off: int) -> Optional[int]:
    if off < 0 or off + 8 > len(data):
        return None
    return struct.unpack_from("<Q", data, off)[0]


def _read_bytes(data: bytes, off: int, size: int) -> Optional[bytes]:
    if off < 0 or size < 0 or off + size > len(data):
        return None
    return data[off : off + size]


def _safe_ascii(b: bytes) -> str:
    return b.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def read_c_string(data: bytes, off: int, *, max_len: int = 512) -> Optional[str]:
    """NUL-terminated ASCII string at ``off``; None if unterminated within ``max_len``."""
    if off < 0 or off >= len(data):
        return None
    end = min(len(data), off + max_len)
    chunk = data[off:end]
    nul = chunk.find(b"\x00")
    if nul == -1:
        return None
    return chunk[:nul].decode("ascii", errors="replace")


def architecture_for_machine(machine: int) -> str:
    if machine == MACHINE_I386:
        return ARCH_X86
    if machine == MACHINE_AMD64:
        return ARCH_X64
    return ARCH_UNKNOWN


@dataclass(frozen=True)
class Section:
    name: str
    virtual_address: int
    virtual_size: int
    raw_ptr: int
    raw_size: int

    @property
    def span(self) -> int:
        # Some linkers under-report one of the two sizes.
        return max(self.virtual_size, self.raw_size)

    def contains_rva(self, rva: int) -> bool:
        return self.span > 0 and self.virtual_address <= rva < self.virtual_address + self.span


@dataclass(frozen=True)
class DataDirectory:
    rva: int = 0
    size: int = 0

    @property
    def present(self) -> bool:
        return self.rva != 0


def rva_to_offset(rva: int, *, sections: Tuple[Section, ...], file_len: int) -> Optional[int]:
    """
    Translate an RVA to a file offset using the first containing section.
    Sections are scanned in table order; the format does not guarantee
    ascending addresses. Returns None when the RVA is unmapped or the
    translated offset falls outside the file. RVA 0 is an ordinary address
    here; callers that use 0 for "absent" check for it themselves.
    """
    if rva < 0:
        return None
    for s in sections:
        if s.contains_rva(rva):
            off = s.raw_ptr + (rva - s.virtual_address)
            if 0 <= off < file_len:
                return off
            return None
    return None


@dataclass(frozen=True)
class PeImage:
    """Immutable parsed view of one image buffer."""

    data: bytes = field(repr=False)
    architecture: str
    machine: int
    e_lfanew: int
    is_pe32_plus: bool
    image_base: int
    sections: Tuple[Section, ...]
    export_dir: DataDirectory
    import_dir: DataDirectory
    delay_import_dir: DataDirectory

    @property
    def size(self) -> int:
        return len(self.data)

    def rva_to_offset(self, rva: int) -> Optional[int]:
        return rva_to_offset(rva, sections=self.sections, file_len=len(self.data))

    def read_c_string_at_rva(self, rva: int, *, max_len: int = 512) -> Optional[str]:
        off = self.rva_to_offset(rva)
        if off is None:
            return None
        return read_c_string(self.data, off, max_len=max_len)

    def sections_summary(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": s.name,
                "virtual_address": s.virtual_address,
                "virtual_size": s.virtual_size,
                "raw_ptr": s.raw_ptr,
                "raw_size": s.raw_size,
            }
            for s in self.sections
        ]


def _read_sections(
    data: bytes,
    sect_off: int,
    number_of_sections: int,
    *,
    max_sections: int,
) -> Tuple[Tuple[Section, ...], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []

    if number_of_sections > max_sections:
        errors.append(
            err(
                E_SECTION_COUNT_CLAMPED,
                f"Section count too large; clamped to max_sections={max_sections}.",
                number_of_sections=number_of_sections,
                max_sections=max_sections,
            )
        )
        number_of_sections = max_sections

    sections: List[Section] = []
    for i in range(number_of_sections):
        sh_off = sect_off + i * SECTION_HEADER_SIZE
        if sh_off + SECTION_HEADER_SIZE > len(data):
            errors.append(
                err(
                    E_TABLE_TRUNCATED,
                    "Section table truncated.",
                    table="sections",
                    section_index=i,
                    sh_off=sh_off,
                )
            )
            break

        sections.append(
            Section(
                name=_safe_ascii(_read_bytes(data, sh_off, 8) or b""),
                virtual_size=_u32(data, sh_off + 8) or 0,
                virtual_address=_u32(data, sh_off + 12) or 0,
                raw_size=_u32(data, sh_off + 16) or 0,
                raw_ptr=_u32(data, sh_off + 20) or 0,
            )
        )
    return tuple(sections), errors


def read_pe_image(data: bytes, *, max_sections: int = 96) -> Tuple[PeImage, List[Dict[str, Any]]]:
    """
    Parse the DOS, COFF and optional headers plus the section table.

    Raises NotAPeFile or UnsupportedOptionalHeaderMagic on any structural
    violation. Returns the image and a list of local (non-fatal) errors.
    """
    data = bytes(data)

    if len(data) < DOS_HEADER_SIZE:
        raise NotAPeFile("Buffer too small for a DOS header.", size=len(data))

    if data[:2] != IMAGE_DOS_SIGNATURE:
        raise NotAPeFile("Missing MZ signature.")

    e_lfanew = _u32(data, 0x3C)
    if e_lfanew is None or e_lfanew + 4 > len(data):
        raise NotAPeFile("e_lfanew points outside file.", e_lfanew=e_lfanew)

    if _read_bytes(data, e_lfanew, 4) != IMAGE_NT_SIGNATURE:
        raise NotAPeFile("Missing PE\\0\\0 signature.", e_lfanew=e_lfanew)

    coff_off = e_lfanew + 4
    if coff_off + COFF_HEADER_SIZE > len(data):
        raise NotAPeFile("COFF header truncated.", coff_off=coff_off)

    machine = _u16(data, coff_off + 0) or 0
    number_of_sections = _u16(data, coff_off + 2) or 0
    size_of_optional_header = _u16(data, coff_off + 16) or 0

    opt_off = coff_off + COFF_HEADER_SIZE
    opt_magic = _u16(data, opt_off)
    if opt_magic is None:
        raise NotAPeFile("Optional header truncated.", opt_off=opt_off)
    if opt_magic not in (PE32_MAGIC, PE32P_MAGIC):
        raise UnsupportedOptionalHeaderMagic(
            f"Optional header magic 0x{opt_magic:x} is not PE32/PE32+.",
            opt_magic=opt_magic,
        )

    is_pe32_plus = opt_magic == PE32P_MAGIC

    if is_pe32_plus:
        image_base = _u64(data, opt_off + 0x18)
    else:
        image_base = _u32(data, opt_off + 0x1C)
    if image_base is None:
        raise NotAPeFile("Optional header truncated before ImageBase.", opt_off=opt_off)

    dd_off = opt_off + (0x70 if is_pe32_plus else 0x60)
    dd_end = opt_off + size_of_optional_header

    def _dd(idx: int) -> DataDirectory:
        # NumberOfRvaAndSizes is ignored; the optional header size bounds the read.
        if dd_off + (idx + 1) * 8 <= dd_end:
            r = _u32(data, dd_off + idx * 8) or 0
            s = _u32(data, dd_off + idx * 8 + 4) or 0
            return DataDirectory(rva=r, size=s)
        return DataDirectory()

    sections, errors = _read_sections(
        data,
        opt_off + size_of_optional_header,
        number_of_sections,
        max_sections=max_sections,
    )

    image = PeImage(
        data=data,
        architecture=architecture_for_machine(machine),
        machine=machine,
        e_lfanew=e_lfanew,
        is_pe32_plus=is_pe32_plus,
        image_base=image_base,
        sections=sections,
        export_dir=_dd(DIR_EXPORT),
        import_dir=_dd(DIR_IMPORT),
        delay_import_dir=_dd(DIR_DELAY_IMPORT),
    )
    return image, errors
