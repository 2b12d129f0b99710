from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pelens.errors import (
    E_DIRECTORY_UNMAPPED,
    E_LIMIT_REACHED,
    E_NAME_UNREADABLE,
    E_TABLE_TRUNCATED,
    err,
)
from pelens.logging_config import log_debug
from pelens.pe import DataDirectory, PeImage, _u32, _u64

IMPORT_DESCRIPTOR_SIZE = 20
DELAY_DESCRIPTOR_SIZE = 32

ORDINAL_FLAG32 = 0x80000000
ORDINAL_FLAG64 = 0x8000000000000000

# grAttrs bit 0: descriptor fields are RVAs rather than virtual addresses
DLATTR_RVA = 0x1


@dataclass(frozen=True)
class ImportedSymbol:
    name: Optional[str] = None
    ordinal: Optional[int] = None
    resolved_name: Optional[str] = None

    @property
    def is_ordinal(self) -> bool:
        return self.name is None


@dataclass(frozen=True)
class ImportedModule:
    dll_name: str
    is_delay: bool
    symbols: Tuple[ImportedSymbol, ...] = ()

    @property
    def key(self) -> Tuple[str, bool]:
        # Module identity is case-insensitive; eager and delay stay distinct.
        return self.dll_name.lower(), self.is_delay


def delay_field_to_rva(value: int, *, rva_based: bool, image_base: int) -> Optional[int]:
    """
    Convert a delay-load descriptor address field to an RVA. Old-style
    descriptors (grAttrs bit 0 clear) store absolute virtual addresses.
    """
    if rva_based or value == 0:
        return value
    if value < image_base:
        return None
    return value - image_base


def _walk_thunks(
    image: PeImage,
    thunk_rva: int,
    errors: List[Dict[str, Any]],
    *,
    dll: str,
    directory: str,
    max_thunks: int,
    max_name_len: int,
) -> List[ImportedSymbol]:
    thunk_off = image.rva_to_offset(thunk_rva) if thunk_rva else None
    if thunk_off is None:
        errors.append(
            err(
                E_DIRECTORY_UNMAPPED,
                "Import thunk RVA could not be mapped.",
                directory=directory,
                table="thunks",
                dll=dll,
                thunk_rva=thunk_rva,
            )
        )
        return []

    if image.is_pe32_plus:
        entry_size, ordinal_flag, read = 8, ORDINAL_FLAG64, _u64
    else:
        entry_size, ordinal_flag, read = 4, ORDINAL_FLAG32, _u32

    symbols: List[ImportedSymbol] = []
    for idx in range(max_thunks):
        val = read(image.data, thunk_off + idx * entry_size)
        if val is None:
            errors.append(
                err(
                    E_TABLE_TRUNCATED,
                    "Import thunk table truncated.",
                    directory=directory,
                    table="thunks",
                    dll=dll,
                    entries_read=idx,
                )
            )
            return symbols
        if val == 0:
            return symbols

        if val & ordinal_flag:
            symbols.append(ImportedSymbol(ordinal=val & 0xFFFF))
            continue

        # IMAGE_IMPORT_BY_NAME: u16 hint, then the name
        name = image.read_c_string_at_rva(val + 2, max_len=max_name_len)
        if not name:
            errors.append(
                err(
                    E_NAME_UNREADABLE,
                    "Imported function name unreadable.",
                    directory=directory,
                    dll=dll,
                    ibn_rva=val,
                )
            )
            continue
        symbols.append(ImportedSymbol(name=name))

    errors.append(
        err(
            E_LIMIT_REACHED,
            f"Import thunk count exceeded max_thunks={max_thunks}.",
            directory=directory,
            dll=dll,
        )
    )
    return symbols


def _directory_offset(
    image: PeImage, directory: DataDirectory, name: str, errors: List[Dict[str, Any]]
) -> Optional[int]:
    if not directory.present:
        return None
    off = image.rva_to_offset(directory.rva)
    if off is None:
        errors.append(
            err(
                E_DIRECTORY_UNMAPPED,
                f"{name.capitalize()} directory RVA could not be mapped to file offset.",
                directory=name,
                rva=directory.rva,
            )
        )
    return off


def _dll_name(
    image: PeImage, name_rva: Optional[int], index: int, directory: str, errors: List[Dict[str, Any]], *, max_name_len: int
) -> str:
    dll_name = image.read_c_string_at_rva(name_rva, max_len=max_name_len) if name_rva else None
    if dll_name:
        return dll_name
    errors.append(
        err(
            E_NAME_UNREADABLE,
            "Import DLL name could not be read.",
            directory=directory,
            name_rva=name_rva,
        )
    )
    return f"__unreadable_dll_{index}__"


def parse_imports(
    image: PeImage,
    *,
    max_modules: int = 256,
    max_thunks: int = 4096,
    max_name_len: int = 512,
) -> Tuple[List[ImportedModule], List[Dict[str, Any]]]:
    """Walk IMAGE_IMPORT_DESCRIPTOR entries (eager imports), unmerged."""
    errors: List[Dict[str, Any]] = []
    modules: List[ImportedModule] = []

    base_off = _directory_offset(image, image.import_dir, "import", errors)
    if base_off is None:
        return modules, errors

    data = image.data
    for index in range(max_modules + 1):
        if index == max_modules:
            errors.append(
                err(E_LIMIT_REACHED, f"Import DLL count exceeded max_modules={max_modules}.", directory="import")
            )
            break

        desc_off = base_off + index * IMPORT_DESCRIPTOR_SIZE
        if desc_off + IMPORT_DESCRIPTOR_SIZE > len(data):
            errors.append(
                err(
                    E_TABLE_TRUNCATED,
                    "Import descriptor table truncated.",
                    directory="import",
                    table="descriptors",
                    desc_off=desc_off,
                )
            )
            break

        original_first_thunk, time_date_stamp, forwarder_chain, name_rva, first_thunk = (
            _u32(data, desc_off + 4 * k) or 0 for k in range(5)
        )
        if not (original_first_thunk or time_date_stamp or forwarder_chain or name_rva or first_thunk):
            break

        dll_name = _dll_name(image, name_rva, index, "import", errors, max_name_len=max_name_len)
        symbols = _walk_thunks(
            image,
            original_first_thunk or first_thunk,
            errors,
            dll=dll_name,
            directory="import",
            max_thunks=max_thunks,
            max_name_len=max_name_len,
        )
        modules.append(ImportedModule(dll_name=dll_name, is_delay=False, symbols=tuple(symbols)))

    log_debug(f"imports: {len(modules)} eager descriptor(s)")
    return modules, errors


def parse_delay_imports(
    image: PeImage,
    *,
    max_modules: int = 256,
    max_thunks: int = 4096,
    max_name_len: int = 512,
) -> Tuple[List[ImportedModule], List[Dict[str, Any]]]:
    """Walk ImgDelayDescr entries (data directory 13), unmerged."""
    errors: List[Dict[str, Any]] = []
    modules: List[ImportedModule] = []

    base_off = _directory_offset(image, image.delay_import_dir, "delay_import", errors)
    if base_off is None:
        return modules, errors

    data = image.data
    for index in range(max_modules + 1):
        if index == max_modules:
            errors.append(
                err(
                    E_LIMIT_REACHED,
                    f"Delay-import DLL count exceeded max_modules={max_modules}.",
                    directory="delay_import",
                )
            )
            break

        desc_off = base_off + index * DELAY_DESCRIPTOR_SIZE
        if desc_off + DELAY_DESCRIPTOR_SIZE > len(data):
            errors.append(
                err(
                    E_TABLE_TRUNCATED,
                    "Delay-import descriptor table truncated.",
                    directory="delay_import",
                    table="descriptors",
                    desc_off=desc_off,
                )
            )
            break

        # grAttrs, szName, phmod, pIAT, pINT, pBoundIAT, pUnloadIAT, dwTimeStamp
        fields = [_u32(data, desc_off + 4 * k) or 0 for k in range(8)]
        if not any(fields):
            break
        attrs, sz_name, p_int = fields[0], fields[1], fields[4]

        rva_based = bool(attrs & DLATTR_RVA)
        name_rva = delay_field_to_rva(sz_name, rva_based=rva_based, image_base=image.image_base)
        int_rva = delay_field_to_rva(p_int, rva_based=rva_based, image_base=image.image_base)

        dll_name = _dll_name(image, name_rva, index, "delay_import", errors, max_name_len=max_name_len)
        symbols: List[ImportedSymbol] = []
        if int_rva:
            symbols = _walk_thunks(
                image,
                int_rva,
                errors,
                dll=dll_name,
                directory="delay_import",
                max_thunks=max_thunks,
                max_name_len=max_name_len,
            )
        else:
            errors.append(
                err(
                    E_DIRECTORY_UNMAPPED,
                    "Delay-import name table address could not be resolved.",
                    directory="delay_import",
                    table="thunks",
                    dll=dll_name,
                    p_int=p_int,
                )
            )
        modules.append(ImportedModule(dll_name=dll_name, is_delay=True, symbols=tuple(symbols)))

    log_debug(f"imports: {len(modules)} delay-load descriptor(s)")
    return modules, errors


def _symbol_sort_key(s: ImportedSymbol) -> Tuple[int, str, int]:
    if s.name is not None:
        return 0, s.name, 0
    return 1, "", s.ordinal or 0


def _dedupe_symbols(symbols: Iterable[ImportedSymbol]) -> Tuple[ImportedSymbol, ...]:
    by_name: Dict[str, ImportedSymbol] = {}
    by_ordinal: Dict[int, ImportedSymbol] = {}
    for s in symbols:
        if s.name is not None:
            by_name.setdefault(s.name, s)
        elif s.ordinal is not None:
            prev = by_ordinal.get(s.ordinal)
            if prev is None or (prev.resolved_name is None and s.resolved_name is not None):
                by_ordinal[s.ordinal] = s
    merged = list(by_name.values()) + list(by_ordinal.values())
    merged.sort(key=_symbol_sort_key)
    return tuple(merged)


def merge_modules(modules: Iterable[ImportedModule]) -> List[ImportedModule]:
    """
    Merge descriptors naming the same module (case-insensitive), then
    de-duplicate and sort each symbol list: names lexicographically,
    followed by ordinal-only imports in ordinal order.
    """
    buckets: Dict[Tuple[str, bool], List[ImportedModule]] = {}
    for m in modules:
        buckets.setdefault(m.key, []).append(m)

    merged: List[ImportedModule] = []
    for group in buckets.values():
        symbols = [s for m in group for s in m.symbols]
        merged.append(
            ImportedModule(dll_name=group[0].dll_name, is_delay=group[0].is_delay, symbols=_dedupe_symbols(symbols))
        )

    merged.sort(key=lambda m: m.key)
    return merged
