"""Job, result and work item types owned by the job store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


class ResultStatus(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    HAS_ATTORNEY = "has_attorney"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    """Normalized outcome for one identifier."""

    identifier: str
    status: ResultStatus
    owner_name: str | None = None
    mark_text: str | None = None
    owner_phone: str | None = None
    owner_email: str | None = None
    filing_date: str | None = None
    abandon_date: str | None = None
    abandon_reason: str | None = None
    # Only populated for attorney-represented filings, for diagnostics.
    attorney_name: str | None = None
    error_message: str | None = None

    @classmethod
    def failure(cls, identifier: str, message: str) -> "ExtractionResult":
        return cls(identifier=identifier, status=ResultStatus.ERROR, error_message=message)

    @classmethod
    def not_found(cls, identifier: str) -> "ExtractionResult":
        return cls(
            identifier=identifier,
            status=ResultStatus.NOT_FOUND,
            error_message="Trademark not found",
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ExtractionResult":
        data = dict(payload)
        data["status"] = ResultStatus(data["status"])
        return cls(**data)


@dataclass(slots=True)
class JobCounts:
    """Aggregate progress derived from a job's stored results."""

    total: int
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    had_attorney: int = 0
    not_found: int = 0

    @classmethod
    def from_results(cls, total: int, results: Iterable[ExtractionResult]) -> "JobCounts":
        tally: dict[ResultStatus, int] = {}
        for result in results:
            tally[result.status] = tally.get(result.status, 0) + 1
        return cls.from_status_counts(total, tally)

    @classmethod
    def from_status_counts(cls, total: int, tally: dict[ResultStatus, int]) -> "JobCounts":
        processed = sum(tally.values())
        failed = tally.get(ResultStatus.ERROR, 0)
        return cls(
            total=total,
            processed=processed,
            succeeded=processed - failed,
            failed=failed,
            had_attorney=tally.get(ResultStatus.HAS_ATTORNEY, 0),
            not_found=tally.get(ResultStatus.NOT_FOUND, 0),
        )

    @property
    def remaining(self) -> int:
        return self.total - self.processed

    @property
    def is_complete(self) -> bool:
        return self.processed == self.total

    def filtering_stats(self) -> dict[str, int]:
        return {
            "total_fetched": self.processed,
            "self_filed": self.processed - self.had_attorney,
            "had_attorney": self.had_attorney,
        }


@dataclass(slots=True)
class Job:
    """Snapshot of one batch submission as read from the store."""

    id: str
    identifiers: list[str]
    status: JobStatus
    counts: JobCounts
    created_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
    archived_at: datetime | None = None
    # Slot index -> result. Only filled when results were requested.
    results: dict[int, ExtractionResult] | None = field(default=None, repr=False)

    def ordered_results(self) -> list[ExtractionResult]:
        """Results in submission order, skipping slots not yet attempted."""

        if self.results is None:
            return []
        return [self.results[slot] for slot in sorted(self.results)]

    @property
    def archived(self) -> bool:
        return self.archived_at is not None

    def result_for(self, identifier: str) -> ExtractionResult | None:
        """Latest result recorded for ``identifier`` (last slot wins)."""

        if not self.results:
            return None
        found = None
        for slot in sorted(self.results):
            if self.identifiers[slot] == identifier:
                found = self.results[slot]
        return found

    def to_dict(self, include_results: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "total": self.counts.total,
            "processed": self.counts.processed,
            "succeeded": self.counts.succeeded,
            "failed": self.counts.failed,
            "filtering_stats": self.counts.filtering_stats(),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "archived": self.archived,
        }
        if include_results:
            payload["results"] = [result.to_dict() for result in self.ordered_results()]
        return payload


@dataclass(slots=True)
class WorkItem:
    """One claimed slot travelling through the dispatcher."""

    job_id: str
    slot: int
    identifier: str
    attempts: int = 0


@dataclass(slots=True)
class CommitOutcome:
    committed: bool
    job: Job | None = None
    job_completed: bool = False


__all__ = [
    "CommitOutcome",
    "ExtractionResult",
    "Job",
    "JobCounts",
    "JobStatus",
    "ResultStatus",
    "WorkItem",
]
