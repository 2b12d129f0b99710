from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    from importlib import metadata
except ImportError:
    import importlib_metadata as metadata  # type: ignore

import typer

from pelens.analyzer import analyze_path, input_evidence, limits_from_config
from pelens.config import AppConfig, config_to_snapshot, load_config
from pelens.logging_config import setup_logging
from pelens.model import ImportedSymbolRecord, ReportBundle
from pelens.reporters.console import render_errors, render_exports, render_imports, render_summary
from pelens.reporters.csv_report import write_symbols_csv
from pelens.reporters.json_report import dumps_bundle, write_bundle_json

app = typer.Typer(add_completion=False)


def version_callback(value: bool):
    if value:
        try:
            v = metadata.version("pelens")
        except metadata.PackageNotFoundError:
            v = "0.1.0-dev"
        typer.echo(f"pelens version: {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors."),
):
    """
    Static PE export/import analyzer. Never executes or loads the input.
    """
    setup_logging(verbose=verbose, quiet=quiet)


def select_exports(exports: List[Dict[str, Any]], only: Optional[List[str]]) -> List[Dict[str, Any]]:
    """Exports whose name matches one of ``only`` (case-insensitive); all when unset."""
    if not only:
        return exports
    wanted = {n.lower() for n in only}
    return [e for e in exports if str(e.get("name", "")).lower() in wanted]


def select_imports(modules: List[Dict[str, Any]], pattern: Optional[str]) -> List[Dict[str, Any]]:
    """Keep only symbols whose display name matches ``pattern``; drop emptied modules."""
    if not pattern:
        return modules
    rx = re.compile(pattern, re.IGNORECASE)
    out: List[Dict[str, Any]] = []
    for m in modules:
        syms = [
            s
            for s in m.get("symbols", []) or []
            if rx.search(ImportedSymbolRecord.model_validate(s).display_name)
        ]
        if syms:
            out.append({**m, "symbols": syms})
    return out


def _run_analysis(path: str, cfg: AppConfig, *, resolve: bool) -> Dict[str, Any]:
    p = Path(path).expanduser().resolve()
    if not p.exists() or not p.is_file():
        raise typer.BadParameter(f"Path does not exist or is not a file: {p}")

    size = p.stat().st_size
    if size > cfg.limits.max_file_size_bytes:
        typer.secho(f"Skipping {p.name}: File too large ({size} bytes).", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)

    res = analyze_path(
        p,
        limits=limits_from_config(cfg),
        resolve_ordinals=resolve and cfg.resolve_ordinals,
        dependency_dirs=cfg.dependency_dirs,
        max_file_size_bytes=cfg.limits.max_file_size_bytes,
    )
    bundle = ReportBundle(
        schema_version=cfg.schema_version,
        input=input_evidence(p),
        report=res.report,
        fatal=res.fatal,
        config_snapshot=config_to_snapshot(cfg),
    ).model_dump()

    if res.fatal is not None:
        typer.secho(
            f"Error analyzing {p.name}: {res.fatal['code']}: {res.fatal['message']}",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)
    return bundle


@app.command()
def analyze(
    path: str = typer.Argument(..., help="PE image (EXE/DLL) to analyze."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
    json_out: str = typer.Option(None, "--json-out", help="Write the JSON report to this file."),
    csv_out: str = typer.Option(None, "--csv-out", help="Write a per-symbol CSV to this file."),
    only: Optional[List[str]] = typer.Option(None, "--only", help="Export name to keep (repeatable)."),
    no_resolve: bool = typer.Option(False, "--no-resolve", help="Do not resolve ordinal imports."),
    as_json: bool = typer.Option(False, "--json", help="Print the JSON report to stdout."),
):
    """
    Full report: header facts, exports and imported modules.
    """
    cfg = load_config(config)
    bundle = _run_analysis(path, cfg, resolve=not no_resolve)
    report = bundle["report"]
    report["exports"] = select_exports(report["exports"], only)

    if json_out:
        write_bundle_json(Path(json_out).expanduser(), bundle)
    if csv_out:
        write_symbols_csv(Path(csv_out).expanduser(), report)

    if as_json:
        typer.echo(dumps_bundle(bundle))
        return

    render_summary(bundle)
    render_exports(report["exports"])
    render_imports(report["imported_modules"])
    render_errors(report["errors"])


@app.command()
def exports(
    path: str = typer.Argument(..., help="PE image (EXE/DLL)."),
    only: Optional[List[str]] = typer.Option(None, "--only", help="Export name to report (repeatable)."),
    full: bool = typer.Option(False, "--full", help="Also print every export as name<TAB>stdcallArgBytes."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """
    Export summary with guessed stdcall argument bytes (x86).
    """
    cfg = load_config(config)
    bundle = _run_analysis(path, cfg, resolve=False)
    report = bundle["report"]
    all_exports = report["exports"]

    summary = {
        "file": bundle["input"]["input_path"],
        "arch": report["architecture"],
        "exportCount": len(all_exports),
        "selected": [
            {"name": e["name"], "stdcallArgBytes": e["stdcall_arg_bytes"], "rva": e["rva"]}
            for e in select_exports(all_exports, only)
        ],
    }
    typer.echo(json.dumps(summary, indent=2))

    if full:
        for e in all_exports:
            n = "?" if e["stdcall_arg_bytes"] is None else str(e["stdcall_arg_bytes"])
            typer.echo(f"{e['name']}\tstdcallArgBytes={n}")


@app.command()
def imports(
    path: str = typer.Argument(..., help="PE image (EXE/DLL)."),
    match: str = typer.Option(None, "--match", help="Regex; only list matching symbols."),
    no_resolve: bool = typer.Option(False, "--no-resolve", help="Do not resolve ordinal imports."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of tables."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """
    Imported modules (eager and delay-load) and their symbols.
    """
    cfg = load_config(config)
    bundle = _run_analysis(path, cfg, resolve=not no_resolve)
    report = bundle["report"]
    try:
        modules = select_imports(report["imported_modules"], match)
    except re.error as e:
        raise typer.BadParameter(f"Invalid --match pattern: {e}")

    if as_json:
        listing = {
            "file": bundle["input"]["input_path"],
            "arch": report["architecture"],
            "imports": modules,
        }
        typer.echo(json.dumps(listing, indent=2))
        return
    render_imports(modules)


if __name__ == "__main__":
    app()
