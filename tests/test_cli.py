from __future__ import annotations

import csv
import json
from pathlib import Path

from typer.testing import CliRunner

from pe_builder import PeBuilder, add_delay_imports, add_exports, add_imports
from pelens.cli import app, select_exports, select_imports

runner = CliRunner()


def _write_image(tmp_path: Path) -> Path:
    b = PeBuilder()
    b.put(0x1000, b"\x55\x8b\xec\x5d\xc2\x08\x00")
    b.put(0x1010, b"\xc3")
    add_exports(b, functions=[0x1000, 0x1010], names=[("FTRInitialize", 0), ("FTRTerminate", 1)])
    add_imports(b, [("KERNEL32.dll", ["ExitProcess", 5]), ("ftrScanAPI.dll", ["ftrScanOpenDevice"])])
    add_delay_imports(b, [("USER32.dll", ["MessageBoxA"])])
    p = tmp_path / "sample.dll"
    p.write_bytes(b.build())
    return p


def test_analyze_json(tmp_path: Path):
    p = _write_image(tmp_path)
    result = runner.invoke(app, ["analyze", str(p), "--json", "--no-resolve"])
    assert result.exit_code == 0, result.output

    bundle = json.loads(result.output)
    assert bundle["fatal"] is None
    assert bundle["input"]["file_size"] == p.stat().st_size
    report = bundle["report"]
    assert report["architecture"] == "x86"
    assert [e["name"] for e in report["exports"]] == ["FTRInitialize", "FTRTerminate"]
    assert report["exports"][0]["stdcall_arg_bytes"] == 8
    assert [m["dll_name"] for m in report["imported_modules"]] == ["ftrScanAPI.dll", "KERNEL32.dll", "USER32.dll"]


def test_analyze_writes_json_and_csv(tmp_path: Path):
    p = _write_image(tmp_path)
    json_out = tmp_path / "out" / "report.json"
    csv_out = tmp_path / "out" / "symbols.csv"
    result = runner.invoke(
        app,
        ["analyze", str(p), "--json-out", str(json_out), "--csv-out", str(csv_out), "--only", "ftrinitialize"],
    )
    assert result.exit_code == 0, result.output

    bundle = json.loads(json_out.read_text(encoding="utf-8"))
    assert [e["name"] for e in bundle["report"]["exports"]] == ["FTRInitialize"]
    assert bundle["config_snapshot"]["limits"]["stdcall_scan_window"] == 2048

    with csv_out.open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert rows[0]["kind"] == "export"
    assert rows[0]["stdcall_arg_bytes"] == "8"
    assert rows[0]["rva"] == "0x1000"
    delay_rows = [r for r in rows if r["module"] == "USER32.dll"]
    assert delay_rows[0]["is_delay"] == "true"
    ordinal_rows = [r for r in rows if r["ordinal"] == "5"]
    assert ordinal_rows[0]["name"] == ""


def test_exports_summary(tmp_path: Path):
    p = _write_image(tmp_path)
    result = runner.invoke(app, ["exports", str(p), "--only", "FTRTerminate", "--full"])
    assert result.exit_code == 0, result.output
    assert "FTRInitialize\tstdcallArgBytes=8" in result.output
    assert "FTRTerminate\tstdcallArgBytes=?" in result.output

    summary = json.loads(result.output.split("\nFTRInitialize")[0])
    assert summary["arch"] == "x86"
    assert summary["exportCount"] == 2
    assert summary["selected"] == [{"name": "FTRTerminate", "stdcallArgBytes": None, "rva": 0x1010}]


def test_imports_match(tmp_path: Path):
    p = _write_image(tmp_path)
    result = runner.invoke(app, ["imports", str(p), "--json", "--match", "ftr|scan"])
    assert result.exit_code == 0, result.output
    out = json.loads(result.output)
    assert [m["dll_name"] for m in out["imports"]] == ["ftrScanAPI.dll"]


def test_imports_tables_render(tmp_path: Path):
    p = _write_image(tmp_path)
    result = runner.invoke(app, ["imports", str(p)])
    assert result.exit_code == 0, result.output
    assert "USER32.dll (delay)" in result.output
    assert "MessageBoxA" in result.output


def test_not_a_pe_exits_nonzero(tmp_path: Path):
    p = tmp_path / "notes.txt"
    p.write_text("hello", encoding="utf-8")
    result = runner.invoke(app, ["analyze", str(p)])
    assert result.exit_code == 1


def test_missing_path_is_bad_parameter(tmp_path: Path):
    result = runner.invoke(app, ["analyze", str(tmp_path / "missing.dll")])
    assert result.exit_code != 0


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "pelens version" in result.output


def test_select_helpers():
    exports = [{"name": "Foo"}, {"name": "Bar"}]
    assert select_exports(exports, None) == exports
    assert select_exports(exports, ["foo"]) == [{"name": "Foo"}]

    modules = [
        {"dll_name": "A.dll", "symbols": [{"name": "Open"}, {"name": None, "ordinal": 3, "resolved_name": "Close"}]},
        {"dll_name": "B.dll", "symbols": [{"name": "Other"}]},
    ]
    picked = select_imports(modules, "close")
    assert picked == [{"dll_name": "A.dll", "symbols": [{"name": None, "ordinal": 3, "resolved_name": "Close"}]}]
    assert select_imports(modules, r"#3\b") == picked
