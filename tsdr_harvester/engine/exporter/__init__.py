"""Exporter SPI and implementations."""

from __future__ import annotations

from pathlib import Path

from .base import BaseExporter, REPORT_COLUMNS, report_row
from .file_exporter import FileExporter
from .xlsx_exporter import XlsxExporter


def create_exporter(path: Path, fmt: str) -> BaseExporter:
    if fmt == "xlsx":
        return XlsxExporter(path)
    return FileExporter(path, fmt)


__all__ = [
    "BaseExporter",
    "FileExporter",
    "REPORT_COLUMNS",
    "XlsxExporter",
    "create_exporter",
    "report_row",
]
