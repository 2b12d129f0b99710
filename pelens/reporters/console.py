from __future__ import annotations
from rich.console import Console
from rich.table import Table
from typing import Dict, Any, List

from pelens.model import ImportedModuleRecord

console = Console()


def _hex(v: Any) -> str:
    return "" if v is None else f"0x{int(v):x}"


def _argbytes(v: Any) -> str:
    return "?" if v is None else str(v)


def render_summary(bundle: Dict[str, Any]) -> None:
    inp = bundle.get("input", {})
    report = bundle.get("report") or {}
    t = Table(title="pelens: PE symbol report (static, no execution)")
    t.add_column("Field")
    t.add_column("Value", overflow="fold")
    t.add_row("input", str(inp.get("input_path", "")))
    t.add_row("size", str(inp.get("file_size", "")))
    t.add_row("sha256", str(inp.get("sha256", "")))
    t.add_row("architecture", str(report.get("architecture", "")))
    t.add_row("machine", _hex(report.get("machine")))
    t.add_row("image_base", _hex(report.get("image_base")))
    t.add_row("sections", str(report.get("section_count", "")))
    t.add_row("export_dll_name", str(report.get("export_dll_name") or ""))
    t.add_row("exports", str(len(report.get("exports", []) or [])))
    t.add_row("imported_modules", str(len(report.get("imported_modules", []) or [])))
    t.add_row("errors", str(len(report.get("errors", []) or [])))
    console.print(t)


def render_exports(exports: List[Dict[str, Any]], *, title: str = "Exports") -> None:
    t = Table(title=title)
    t.add_column("Name", overflow="fold")
    t.add_column("Ordinal", justify="right")
    t.add_column("RVA")
    t.add_column("Stdcall arg bytes", justify="right")
    t.add_column("Forwarder", overflow="fold")
    for e in exports:
        t.add_row(
            str(e.get("name", "")),
            str(e.get("ordinal", "")),
            _hex(e.get("rva")),
            _argbytes(e.get("stdcall_arg_bytes")),
            str(e.get("forwarder") or ""),
        )
    console.print(t)


def render_imports(modules: List[Dict[str, Any]]) -> None:
    for raw in modules:
        m = ImportedModuleRecord.model_validate(raw)
        t = Table(title=m.label)
        t.add_column("Symbol", overflow="fold")
        t.add_column("Ordinal", justify="right")
        for s in m.symbols:
            t.add_row(s.display_name, "" if s.ordinal is None else str(s.ordinal))
        console.print(t)


def render_errors(errors: List[Dict[str, Any]]) -> None:
    for e in errors:
        console.print(f"[yellow]{e.get('code', '')}[/yellow] {e.get('message', '')}")
