from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pelens.config import AppConfig
from pelens.errors import E_LIMIT_REACHED, E_SECTION_COUNT_CLAMPED, PeFormatError
from pelens.exports import ExportEntry, parse_exports
from pelens.imports import ImportedModule, merge_modules, parse_delay_imports, parse_imports
from pelens.loader import DirectoryLoader
from pelens.logging_config import log_debug, log_warning
from pelens.model import (
    AnalysisReport,
    ExportRecord,
    ImportedModuleRecord,
    ImportedSymbolRecord,
    InputEvidence,
    SectionRecord,
)
from pelens.ordinals import LoadFile, resolve_ordinal_imports
from pelens.pe import PeImage, read_pe_image
from pelens.pe_heuristics import annotate_stdcall


@dataclass(frozen=True)
class AnalysisLimits:
    max_sections: int = 96
    max_import_modules: int = 256
    max_thunks_per_module: int = 4096
    max_export_functions: int = 65536
    max_export_names: int = 65536
    max_name_len: int = 512

    stdcall_scan_window: int = 2048
    export_range_fallback: int = 4096


@dataclass(frozen=True)
class AnalysisResult:
    report: Optional[AnalysisReport]
    fatal: Optional[Dict[str, Any]]
    errors: List[Dict[str, Any]]

    @property
    def ok(self) -> bool:
        return self.fatal is None


def limits_from_config(cfg: AppConfig) -> AnalysisLimits:
    lim = cfg.limits
    return AnalysisLimits(
        max_sections=lim.max_sections,
        max_import_modules=lim.max_import_modules,
        max_thunks_per_module=lim.max_thunks_per_module,
        max_export_functions=lim.max_export_functions,
        max_export_names=lim.max_export_names,
        max_name_len=lim.max_name_len,
        stdcall_scan_window=lim.stdcall_scan_window,
        export_range_fallback=lim.export_range_fallback,
    )


def _export_record(e: ExportEntry) -> ExportRecord:
    return ExportRecord(
        name=e.name,
        ordinal=e.public_ordinal,
        rva=e.function_rva,
        file_offset=e.file_offset,
        stdcall_arg_bytes=e.stdcall_arg_bytes,
        forwarder=e.forwarder,
    )


def _module_record(m: ImportedModule) -> ImportedModuleRecord:
    return ImportedModuleRecord(
        dll_name=m.dll_name,
        is_delay=m.is_delay,
        symbols=[
            ImportedSymbolRecord(name=s.name, ordinal=s.ordinal, resolved_name=s.resolved_name)
            for s in m.symbols
        ],
    )


def _collect_imports(
    image: PeImage, limits: AnalysisLimits, load_file: Optional[LoadFile]
) -> Tuple[List[ImportedModule], List[Dict[str, Any]]]:
    kw = dict(
        max_modules=limits.max_import_modules,
        max_thunks=limits.max_thunks_per_module,
        max_name_len=limits.max_name_len,
    )
    # The two directories are independent; one failing leaves the other intact.
    eager, eager_errs = parse_imports(image, **kw)
    delay, delay_errs = parse_delay_imports(image, **kw)

    modules = merge_modules(eager + delay)
    modules = resolve_ordinal_imports(
        modules,
        load_file,
        max_sections=limits.max_sections,
        max_name_len=limits.max_name_len,
    )
    return modules, eager_errs + delay_errs


def analyze_pe_bytes(
    data: bytes,
    *,
    load_file: Optional[LoadFile] = None,
    limits: AnalysisLimits = AnalysisLimits(),
) -> AnalysisResult:
    """
    Analyze one image buffer. Never raises for malformed input: a structural
    failure comes back as ``fatal``, local table problems as ``errors``.
    """
    try:
        image, errors = read_pe_image(data, max_sections=limits.max_sections)
    except PeFormatError as e:
        log_debug(f"analyze: fatal {e.code}: {e}")
        return AnalysisResult(report=None, fatal=e.as_error(), errors=[])

    table, export_errs = parse_exports(
        image,
        max_functions=limits.max_export_functions,
        max_names=limits.max_export_names,
        max_name_len=limits.max_name_len,
        range_fallback=limits.export_range_fallback,
    )
    errors.extend(export_errs)
    exports = annotate_stdcall(
        image.data,
        table.entries,
        architecture=image.architecture,
        max_scan=limits.stdcall_scan_window,
    )

    modules, import_errs = _collect_imports(image, limits, load_file)
    errors.extend(import_errs)

    for e in errors:
        if e["code"] in (E_LIMIT_REACHED, E_SECTION_COUNT_CLAMPED):
            log_warning(f"analyze: {e['message']} Output is partial.")

    report = AnalysisReport(
        architecture=image.architecture,
        machine=image.machine,
        is_pe32_plus=image.is_pe32_plus,
        image_base=image.image_base,
        section_count=len(image.sections),
        sections=[SectionRecord(**s) for s in image.sections_summary()],
        export_dll_name=table.dll_name,
        exports=[_export_record(e) for e in exports],
        imported_modules=[_module_record(m) for m in modules],
        errors=list(errors),
    )
    log_debug(
        f"analyze: arch={image.architecture} exports={len(report.exports)} "
        f"modules={len(report.imported_modules)} errors={len(errors)}"
    )
    return AnalysisResult(report=report, fatal=None, errors=errors)


def file_hashes(path: Path) -> tuple[str, str]:
    sha256 = hashlib.sha256()
    md5 = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            sha256.update(chunk)
            md5.update(chunk)
    return sha256.hexdigest(), md5.hexdigest()


def input_evidence(path: Path) -> InputEvidence:
    sha256, md5 = file_hashes(path)
    return InputEvidence(input_path=str(path), file_size=path.stat().st_size, sha256=sha256, md5=md5)


def analyze_path(
    path: Path,
    *,
    limits: AnalysisLimits = AnalysisLimits(),
    resolve_ordinals: bool = True,
    dependency_dirs: Iterable[str] = (),
    max_file_size_bytes: int = 200_000_000,
) -> AnalysisResult:
    """Read an image from disk; ordinal imports resolve against files beside it."""
    load_file = None
    if resolve_ordinals:
        load_file = DirectoryLoader.for_image(path, dependency_dirs, max_bytes=max_file_size_bytes)
    return analyze_pe_bytes(path.read_bytes(), load_file=load_file, limits=limits)
