from datetime import datetime

from pelens.model import (
    AnalysisReport,
    ExportRecord,
    ImportedModuleRecord,
    ImportedSymbolRecord,
    InputEvidence,
    ReportBundle,
)


def _report() -> AnalysisReport:
    return AnalysisReport(
        architecture="x86",
        machine=0x14C,
        is_pe32_plus=False,
        image_base=0x400000,
        exports=[ExportRecord(name="Foo", ordinal=1, rva=0x1000, file_offset=0x400, stdcall_arg_bytes=8)],
        imported_modules=[
            ImportedModuleRecord(
                dll_name="KERNEL32.dll",
                symbols=[ImportedSymbolRecord(name="ExitProcess"), ImportedSymbolRecord(ordinal=5)],
            )
        ],
    )


def test_bundle_timestamp_utc_format():
    b = ReportBundle(input=InputEvidence(input_path="a.dll", file_size=1, sha256="0" * 64, md5="0" * 32))
    assert b.timestamp_utc.endswith("Z")
    datetime.fromisoformat(b.timestamp_utc.replace("Z", "+00:00"))


def test_bundle_round_trip_validation():
    """A dumped bundle can be re-validated by the model."""
    b = ReportBundle(
        input=InputEvidence(input_path="sample.dll", file_size=1024, sha256="f" * 64, md5="f" * 32),
        report=_report(),
    )
    b2 = ReportBundle.model_validate(b.model_dump())
    b3 = ReportBundle.model_validate_json(b.model_dump_json())

    assert b2.report.exports[0].stdcall_arg_bytes == 8
    assert b3.report.imported_modules[0].symbols[1].ordinal == 5
    assert b3.report.imported_modules[0].symbols[1].resolved_name is None
    assert b3.fatal is None


def test_module_label():
    assert ImportedModuleRecord(dll_name="A.dll", is_delay=True).label == "A.dll (delay)"
    assert ImportedModuleRecord(dll_name="A.dll").label == "A.dll"


def test_symbol_display_names():
    assert ImportedSymbolRecord(name="Sleep").display_name == "Sleep"
    assert ImportedSymbolRecord(ordinal=5).display_name == "#5"
    assert ImportedSymbolRecord(ordinal=5, resolved_name="Foo").display_name == "Foo (#5)"


def test_report_section_count_defaults_to_zero():
    assert _report().section_count == 0
