"""Job state: models plus the in-memory and SQLite stores."""

from .models import (
    CommitOutcome,
    ExtractionResult,
    Job,
    JobCounts,
    JobStatus,
    ResultStatus,
    WorkItem,
)
from .sqlite_store import SQLiteJobStore
from .store import JobStore, MemoryJobStore

__all__ = [
    "CommitOutcome",
    "ExtractionResult",
    "Job",
    "JobCounts",
    "JobStatus",
    "JobStore",
    "MemoryJobStore",
    "ResultStatus",
    "SQLiteJobStore",
    "WorkItem",
]
