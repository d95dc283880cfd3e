"""Exporter Service Provider Interface and the shared report layout."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from ...jobs.models import ExtractionResult, ResultStatus

MISSING = "N/A"

REPORT_COLUMNS = (
    "Serial Number",
    "Mark",
    "Owner Name",
    "Owner Phone",
    "Owner Email",
    "Filing Date",
    "Date of Abandon",
    "Abandon Reason",
    "Self-Filed",
    "Status",
    "Error Message",
)


def report_row(result: ExtractionResult) -> dict[str, str]:
    """Flatten a result into the report columns, filling gaps with ``N/A``."""

    return {
        "Serial Number": result.identifier,
        "Mark": result.mark_text or MISSING,
        "Owner Name": result.owner_name or MISSING,
        "Owner Phone": result.owner_phone or MISSING,
        "Owner Email": result.owner_email or MISSING,
        "Filing Date": result.filing_date or MISSING,
        "Date of Abandon": result.abandon_date or MISSING,
        "Abandon Reason": result.abandon_reason or MISSING,
        "Self-Filed": "NO" if result.status is ResultStatus.HAS_ATTORNEY else "YES",
        "Status": result.status.value,
        "Error Message": result.error_message or "",
    }


class BaseExporter(ABC):
    """Uniform exporter contract enabling plug-and-play outputs."""

    def __init__(self) -> None:
        self.written = 0

    @abstractmethod
    def export(self, result: ExtractionResult) -> None:
        """Persist a single result."""

    def export_many(self, results: Iterable[ExtractionResult]) -> None:
        for result in results:
            self.export(result)

    @abstractmethod
    def flush(self) -> None:
        """Flush buffered data to destination."""

    @abstractmethod
    def close(self) -> None:
        """Release underlying resources."""

    def __enter__(self) -> "BaseExporter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["BaseExporter", "MISSING", "REPORT_COLUMNS", "report_row"]
