from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pelens.errors import (
    E_DIRECTORY_UNMAPPED,
    E_LIMIT_REACHED,
    E_NAME_UNREADABLE,
    E_TABLE_TRUNCATED,
    err,
)
from pelens.logging_config import log_debug
from pelens.pe import PeImage, _u16, _u32

EXPORT_DIRECTORY_SIZE = 40


@dataclass(frozen=True)
class ExportEntry:
    name: str
    public_ordinal: int
    function_rva: Optional[int]
    file_offset: Optional[int]
    approximate_end_offset: Optional[int]
    stdcall_arg_bytes: Optional[int] = None
    forwarder: Optional[str] = None


@dataclass(frozen=True)
class ExportTable:
    dll_name: Optional[str] = None
    ordinal_base: int = 0
    number_of_functions: int = 0
    entries: Tuple[ExportEntry, ...] = ()
    # public ordinal -> exported name (None for ordinal-only slots)
    ordinal_map: Mapping[int, Optional[str]] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class _ExportDirectory:
    name_rva: int
    ordinal_base: int
    number_of_functions: int
    number_of_names: int
    functions_rva: int
    names_rva: int
    name_ordinals_rva: int


def _read_directory(data: bytes, off: int) -> Optional[_ExportDirectory]:
    if off + EXPORT_DIRECTORY_SIZE > len(data):
        return None
    return _ExportDirectory(
        name_rva=_u32(data, off + 12) or 0,
        ordinal_base=_u32(data, off + 16) or 0,
        number_of_functions=_u32(data, off + 20) or 0,
        number_of_names=_u32(data, off + 24) or 0,
        functions_rva=_u32(data, off + 28) or 0,
        names_rva=_u32(data, off + 32) or 0,
        name_ordinals_rva=_u32(data, off + 36) or 0,
    )


def _read_function_rvas(
    image: PeImage, d: _ExportDirectory, count: int, errors: List[Dict[str, Any]]
) -> List[int]:
    """AddressOfFunctions, zero-indexed; ordinal_base is never applied here."""
    if count == 0:
        return []
    funcs_off = image.rva_to_offset(d.functions_rva) if d.functions_rva else None
    if funcs_off is None:
        errors.append(
            err(
                E_DIRECTORY_UNMAPPED,
                "AddressOfFunctions RVA could not be mapped.",
                directory="export",
                table="functions",
                rva=d.functions_rva,
            )
        )
        return []

    rvas: List[int] = []
    for j in range(count):
        rva = _u32(image.data, funcs_off + j * 4)
        if rva is None:
            errors.append(
                err(
                    E_TABLE_TRUNCATED,
                    "AddressOfFunctions table truncated.",
                    directory="export",
                    table="functions",
                    entries_read=j,
                )
            )
            break
        rvas.append(rva)
    return rvas


def _read_names(
    image: PeImage,
    d: _ExportDirectory,
    count: int,
    errors: List[Dict[str, Any]],
    *,
    max_name_len: int,
) -> List[Tuple[str, int]]:
    """(name, function index) pairs from AddressOfNames / AddressOfNameOrdinals."""
    if count == 0:
        return []
    names_off = image.rva_to_offset(d.names_rva) if d.names_rva else None
    ords_off = image.rva_to_offset(d.name_ordinals_rva) if d.name_ordinals_rva else None
    if names_off is None or ords_off is None:
        errors.append(
            err(
                E_DIRECTORY_UNMAPPED,
                "Export names/ordinals tables could not be mapped.",
                directory="export",
                table="names",
                names_rva=d.names_rva,
                name_ordinals_rva=d.name_ordinals_rva,
            )
        )
        return []

    out: List[Tuple[str, int]] = []
    for i in range(count):
        ptr_rva = _u32(image.data, names_off + i * 4)
        ord_idx = _u16(image.data, ords_off + i * 2)
        if ptr_rva is None or ord_idx is None:
            errors.append(
                err(
                    E_TABLE_TRUNCATED,
                    "Export name table truncated.",
                    directory="export",
                    table="names",
                    entries_read=i,
                )
            )
            break
        name = image.read_c_string_at_rva(ptr_rva, max_len=max_name_len) if ptr_rva else None
        if not name:
            errors.append(
                err(E_NAME_UNREADABLE, "Export name unreadable.", directory="export", name_rva=ptr_rva)
            )
            continue
        out.append((name, ord_idx))
    return out


def build_ordinal_map(
    ordinal_base: int, number_of_functions: int, names: List[Tuple[str, int]]
) -> Mapping[int, Optional[str]]:
    """
    Public ordinal -> exported name. Every slot of AddressOfFunctions gets a
    key, ordinal-only slots map to None. Keys are biased by ordinal_base;
    the function indices in ``names`` are not.
    """
    ordinal_map: Dict[int, Optional[str]] = {ordinal_base + j: None for j in range(number_of_functions)}
    for name, idx in names:
        ordinal_map[ordinal_base + idx] = name
    return MappingProxyType(ordinal_map)


def _approximate_end(
    image: PeImage,
    func_rva: int,
    file_offset: int,
    sorted_rvas: List[int],
    *,
    fallback: int,
) -> int:
    """
    End of an export's byte range: the next higher exported RVA when it
    translates past this one, else a fixed window. PE does not record
    function length, so this only bounds the opcode scan.
    """
    i = bisect.bisect_right(sorted_rvas, func_rva)
    if i < len(sorted_rvas):
        next_off = image.rva_to_offset(sorted_rvas[i])
        if next_off is not None and next_off > file_offset:
            return next_off
    return min(image.size, file_offset + fallback)


def parse_exports(
    image: PeImage,
    *,
    max_functions: int = 65536,
    max_names: int = 65536,
    max_name_len: int = 512,
    range_fallback: int = 4096,
) -> Tuple[ExportTable, List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []

    export_dir = image.export_dir
    if not export_dir.present:
        return ExportTable(), errors

    base_off = image.rva_to_offset(export_dir.rva)
    if base_off is None:
        return ExportTable(), [
            err(
                E_DIRECTORY_UNMAPPED,
                "Export directory RVA could not be mapped to file offset.",
                directory="export",
                rva=export_dir.rva,
            )
        ]

    d = _read_directory(image.data, base_off)
    if d is None:
        return ExportTable(), [
            err(E_TABLE_TRUNCATED, "Export directory truncated.", directory="export", export_off=base_off)
        ]

    dll_name = image.read_c_string_at_rva(d.name_rva, max_len=max_name_len) if d.name_rva else None

    num_funcs = d.number_of_functions
    if num_funcs > max_functions:
        errors.append(
            err(
                E_LIMIT_REACHED,
                f"Export function count exceeded max_functions={max_functions}.",
                directory="export",
                number_of_functions=num_funcs,
            )
        )
        num_funcs = max_functions

    num_names = d.number_of_names
    if num_names > max_names:
        errors.append(
            err(
                E_LIMIT_REACHED,
                f"Export name count exceeded max_names={max_names}.",
                directory="export",
                number_of_names=num_names,
            )
        )
        num_names = max_names

    function_rvas = _read_function_rvas(image, d, num_funcs, errors)
    names = _read_names(image, d, num_names, errors, max_name_len=max_name_len)

    sorted_rvas = sorted({r for r in function_rvas if r})
    fwd_lo, fwd_hi = export_dir.rva, export_dir.rva + export_dir.size

    entries: List[ExportEntry] = []
    for name, idx in names:
        func_rva = function_rvas[idx] if idx < len(function_rvas) else None
        file_off = image.rva_to_offset(func_rva) if func_rva else None

        forwarder = None
        end_off = None
        if func_rva and fwd_lo <= func_rva < fwd_hi:
            forwarder = image.read_c_string_at_rva(func_rva, max_len=max_name_len)
        elif func_rva is not None and file_off is not None:
            end_off = _approximate_end(image, func_rva, file_off, sorted_rvas, fallback=range_fallback)

        entries.append(
            ExportEntry(
                name=name,
                public_ordinal=d.ordinal_base + idx,
                function_rva=func_rva,
                file_offset=file_off,
                approximate_end_offset=end_off,
                forwarder=forwarder,
            )
        )

    entries.sort(key=lambda e: (e.name, e.public_ordinal))

    log_debug(
        f"exports: dll={dll_name!r} base={d.ordinal_base} functions={num_funcs} named={len(entries)}"
    )

    table = ExportTable(
        dll_name=dll_name,
        ordinal_base=d.ordinal_base,
        number_of_functions=num_funcs,
        entries=tuple(entries),
        ordinal_map=build_ordinal_map(d.ordinal_base, num_funcs, names),
    )
    return table, errors
