"""File based exporter supporting CSV and JSON lines."""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Optional

from ...jobs.models import ExtractionResult
from .base import REPORT_COLUMNS, BaseExporter, report_row


class FileExporter(BaseExporter):
    """Write report rows to a local file.

    ``csv`` uses the human-readable report columns; ``json`` writes one raw
    result object per line so the file can be loaded back losslessly.
    """

    def __init__(self, path: Path, fmt: str) -> None:
        super().__init__()
        if fmt not in ("csv", "json"):
            raise ValueError(f"Unsupported file format: {fmt}")
        self.format = fmt
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("w", encoding="utf-8", newline="")
        self._csv_writer: Optional[csv.DictWriter] = None
        if fmt == "csv":
            self._csv_writer = csv.DictWriter(self._file, fieldnames=list(REPORT_COLUMNS))
            self._csv_writer.writeheader()

    def export(self, result: ExtractionResult) -> None:
        if self._csv_writer is not None:
            self._csv_writer.writerow(report_row(result))
        else:
            json.dump(result.to_dict(), self._file, ensure_ascii=False)
            self._file.write("\n")
        self.written += 1

    def flush(self) -> None:
        self._file.flush()

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


__all__ = ["FileExporter"]
