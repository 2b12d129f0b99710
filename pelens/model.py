from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    """
    UTC timestamp in ISO-8601 with 'Z' suffix, seconds precision.
    Example: 2026-01-08T17:12:34Z
    """
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


class SectionRecord(BaseModel):
    name: str
    virtual_address: int
    virtual_size: int
    raw_ptr: int
    raw_size: int


class ExportRecord(BaseModel):
    name: str
    ordinal: int
    rva: Optional[int] = None
    file_offset: Optional[int] = None
    stdcall_arg_bytes: Optional[int] = None
    forwarder: Optional[str] = None


class ImportedSymbolRecord(BaseModel):
    # Exactly one of name / ordinal is set.
    name: Optional[str] = None
    ordinal: Optional[int] = None
    resolved_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.name is not None:
            return self.name
        if self.resolved_name:
            return f"{self.resolved_name} (#{self.ordinal})"
        return f"#{self.ordinal}"


class ImportedModuleRecord(BaseModel):
    dll_name: str
    is_delay: bool = False
    symbols: List[ImportedSymbolRecord] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.dll_name} (delay)" if self.is_delay else self.dll_name


class AnalysisReport(BaseModel):
    schema_version: str = "1.0"
    architecture: str  # x86, x64, unknown
    machine: int
    is_pe32_plus: bool
    image_base: int
    section_count: int = 0
    sections: List[SectionRecord] = Field(default_factory=list)

    export_dll_name: Optional[str] = None
    exports: List[ExportRecord] = Field(default_factory=list)
    imported_modules: List[ImportedModuleRecord] = Field(default_factory=list)

    errors: List[Dict[str, Any]] = Field(default_factory=list)


class InputEvidence(BaseModel):
    input_path: str
    file_size: int
    sha256: str
    md5: str


class ReportBundle(BaseModel):
    schema_version: str = "1.0"
    timestamp_utc: str = Field(default_factory=utc_now_iso)

    input: InputEvidence
    report: Optional[AnalysisReport] = None
    fatal: Optional[Dict[str, Any]] = None
    config_snapshot: Dict[str, Any] = Field(default_factory=dict)
