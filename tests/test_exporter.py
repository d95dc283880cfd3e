import csv
import json

from openpyxl import load_workbook

from tsdr_harvester.engine.exporter import (
    FileExporter,
    REPORT_COLUMNS,
    XlsxExporter,
    create_exporter,
    report_row,
)
from tsdr_harvester.jobs import ExtractionResult, ResultStatus


def sample_results():
    return [
        ExtractionResult(
            identifier="97000001",
            status=ResultStatus.SUCCESS,
            owner_name="Acme, Inc.",
            mark_text="ACME",
            owner_email="owner@acme.example",
            filing_date="2023-01-05",
        ),
        ExtractionResult(identifier="97000002", status=ResultStatus.HAS_ATTORNEY, attorney_name="Counsel"),
        ExtractionResult.failure("97000003", "Request timeout"),
    ]


def test_report_row_fills_missing_values():
    row = report_row(sample_results()[0])
    assert list(row) == list(REPORT_COLUMNS)
    assert row["Owner Phone"] == "N/A"
    assert row["Self-Filed"] == "YES"
    assert row["Error Message"] == ""

    attorney = report_row(sample_results()[1])
    assert attorney["Self-Filed"] == "NO"
    assert attorney["Status"] == "has_attorney"


def test_file_exporter_csv(tmp_path):
    path = tmp_path / "out" / "report.csv"
    exporter = FileExporter(path, "csv")
    exporter.export_many(sample_results())
    exporter.flush()
    exporter.close()

    with path.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert exporter.written == 3
    assert rows[0]["Owner Name"] == "Acme, Inc."
    assert rows[2]["Status"] == "error"
    assert rows[2]["Error Message"] == "Request timeout"


def test_file_exporter_json_lines(tmp_path):
    path = tmp_path / "report.jsonl"
    with create_exporter(path, "json") as exporter:
        exporter.export_many(sample_results())

    data = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [item["identifier"] for item in data] == ["97000001", "97000002", "97000003"]
    assert ExtractionResult.from_dict(data[0]) == sample_results()[0]


def test_xlsx_exporter_appends_summary(tmp_path):
    path = tmp_path / "report.xlsx"
    exporter = create_exporter(path, "xlsx")
    assert isinstance(exporter, XlsxExporter)
    exporter.export_many(sample_results())
    exporter.close()
    exporter.close()

    sheet = load_workbook(path).active
    rows = list(sheet.iter_rows(values_only=True))
    assert sheet.title == "USPTO Results"
    assert rows[0] == REPORT_COLUMNS
    assert rows[1][0] == "97000001"
    summary = rows[-1]
    assert summary[0] == "SUMMARY"
    assert summary[2] == "Total Self-Filed Records: 2"
    assert summary[4] == "Success: 1"
