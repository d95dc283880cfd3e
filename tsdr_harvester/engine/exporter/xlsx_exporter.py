"""Excel report writer (one sheet plus a trailing summary row)."""

from __future__ import annotations

from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from ...jobs.models import ExtractionResult, ResultStatus
from .base import REPORT_COLUMNS, BaseExporter, report_row

SHEET_TITLE = "USPTO Results"
COLUMN_WIDTHS = (15, 20, 30, 15, 30, 12, 12, 50, 10, 12, 30)


class XlsxExporter(BaseExporter):
    """Buffer rows in a workbook and save on ``close``."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self._workbook = Workbook()
        self._sheet = self._workbook.active
        self._sheet.title = SHEET_TITLE
        self._sheet.append(list(REPORT_COLUMNS))
        for cell in self._sheet[1]:
            cell.font = Font(bold=True)
        for index, width in enumerate(COLUMN_WIDTHS, start=1):
            self._sheet.column_dimensions[get_column_letter(index)].width = width
        self._self_filed = 0
        self._successes = 0
        self._closed = False

    def export(self, result: ExtractionResult) -> None:
        row = report_row(result)
        self._sheet.append([row[column] for column in REPORT_COLUMNS])
        self.written += 1
        if result.status is not ResultStatus.HAS_ATTORNEY:
            self._self_filed += 1
        if result.status is ResultStatus.SUCCESS:
            self._successes += 1

    def flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._workbook.save(self.path)

    def close(self) -> None:
        if self._closed:
            return
        summary = dict.fromkeys(REPORT_COLUMNS, "")
        summary["Serial Number"] = "SUMMARY"
        summary["Owner Name"] = f"Total Self-Filed Records: {self._self_filed}"
        summary["Owner Email"] = f"Success: {self._successes}"
        self._sheet.append([summary[column] for column in REPORT_COLUMNS])
        self._sheet.cell(row=self._sheet.max_row, column=1).font = Font(bold=True)
        self.flush()
        self._closed = True


__all__ = ["XlsxExporter", "SHEET_TITLE"]
