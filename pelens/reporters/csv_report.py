from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict, List

FIELDNAMES = [
    "kind",
    "module",
    "is_delay",
    "name",
    "ordinal",
    "resolved_name",
    "rva",
    "file_offset",
    "stdcall_arg_bytes",
    "forwarder",
]


def _blank(v: Any) -> Any:
    return "" if v is None else v


def symbol_rows(report: Dict[str, Any]) -> List[Dict[str, Any]]:
    """One row per export and per imported symbol, exports first."""
    rows: List[Dict[str, Any]] = []
    export_dll = report.get("export_dll_name") or ""

    for e in report.get("exports", []) or []:
        rows.append(
            {
                "kind": "export",
                "module": export_dll,
                "is_delay": "",
                "name": e.get("name", ""),
                "ordinal": _blank(e.get("ordinal")),
                "resolved_name": "",
                "rva": "" if e.get("rva") is None else f"0x{e['rva']:x}",
                "file_offset": "" if e.get("file_offset") is None else f"0x{e['file_offset']:x}",
                "stdcall_arg_bytes": _blank(e.get("stdcall_arg_bytes")),
                "forwarder": _blank(e.get("forwarder")),
            }
        )

    for m in report.get("imported_modules", []) or []:
        for s in m.get("symbols", []) or []:
            rows.append(
                {
                    "kind": "import",
                    "module": m.get("dll_name", ""),
                    "is_delay": "true" if m.get("is_delay") else "false",
                    "name": _blank(s.get("name")),
                    "ordinal": _blank(s.get("ordinal")),
                    "resolved_name": _blank(s.get("resolved_name")),
                    "rva": "",
                    "file_offset": "",
                    "stdcall_arg_bytes": "",
                    "forwarder": "",
                }
            )
    return rows


def write_symbols_csv(path: Path, report: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
        writer.writeheader()
        writer.writerows(symbol_rows(report))
