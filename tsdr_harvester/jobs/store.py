"""Job store contract and the in-memory implementation.

The store is the single source of truth for job status and counts. Every
mutation that touches counts (``commit``, ``reset_failed``) recomputes them
from the stored results and performs the ``processing -> completed``
transition inside the same critical section, so concurrent workers committing
to one job can never lose an update.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Sequence
from uuid import uuid4

from ..errors import InvalidJobStateError, JobNotFoundError
from .models import (
    CommitOutcome,
    ExtractionResult,
    Job,
    JobCounts,
    JobStatus,
    ResultStatus,
    WorkItem,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid4().hex


def rotate_after(job_ids: Sequence[str], after_job_id: str | None) -> list[str]:
    """Return ``job_ids`` starting just after ``after_job_id`` (wrapping)."""

    ordered = list(job_ids)
    if after_job_id is None or after_job_id not in ordered:
        return ordered
    index = ordered.index(after_job_id) + 1
    return ordered[index:] + ordered[:index]


class JobStore(ABC):
    """Durable record of jobs and their per-slot results."""

    @abstractmethod
    def create_job(self, identifiers: Sequence[str]) -> Job:
        """Persist a new ``pending`` job."""

    @abstractmethod
    def get_job(self, job_id: str, include_results: bool = False) -> Job:
        """Return a snapshot; raises ``JobNotFoundError``."""

    @abstractmethod
    def list_jobs(
        self, status: JobStatus | None = None, archived: bool | None = False
    ) -> list[Job]:
        """Snapshots ordered oldest first.

        Archived jobs are left out unless ``archived`` is true (only archived
        jobs) or ``None`` (every job).
        """

    @abstractmethod
    def claim_next(self, after_job_id: str | None = None) -> WorkItem | None:
        """Atomically claim one pending slot.

        Jobs are visited oldest first, starting after ``after_job_id`` so that
        successive claims rotate across active jobs. Within a job slots are
        claimed in submission order, skipping identifiers that already have a
        claim in flight for that job.
        """

    @abstractmethod
    def release(self, item: WorkItem) -> None:
        """Drop a claim without recording a result."""

    @abstractmethod
    def commit(self, item: WorkItem, result: ExtractionResult) -> CommitOutcome:
        """Record ``result`` for the claimed slot and maybe complete the job.

        Results for jobs that are no longer active are discarded.
        """

    @abstractmethod
    def is_active(self, job_id: str) -> bool:
        """True while the job is pending or processing."""

    @abstractmethod
    def cancel(self, job_id: str) -> Job:
        ...

    @abstractmethod
    def reset_failed(self, job_id: str) -> int:
        """Return ``error`` slots to pending; returns how many were reset."""

    @abstractmethod
    def fail_job(self, job_id: str, message: str) -> Job:
        ...

    @abstractmethod
    def recover_in_flight(self, older_than: datetime | None = None) -> int:
        """Return abandoned claims to pending.

        With ``older_than`` only claims taken before that instant are
        recovered, so claims held by a live process sharing the store stay
        put. Without it every claim is recovered.
        """

    @abstractmethod
    def delete_job(self, job_id: str) -> None:
        """Delete one terminal job; active jobs raise ``InvalidJobStateError``."""

    @abstractmethod
    def set_archived(self, job_id: str, archived: bool) -> Job:
        """Archive a completed job, or unarchive an archived one."""

    @abstractmethod
    def set_paused(self, paused: bool) -> None:
        """Pause or resume claiming for every process sharing the store."""

    @abstractmethod
    def is_paused(self) -> bool:
        ...

    @abstractmethod
    def delete_jobs_before(self, cutoff: datetime) -> int:
        """Delete unarchived terminal jobs finished (or created) before ``cutoff``."""

    def close(self) -> None:
        return


@dataclass
class _JobRecord:
    id: str
    identifiers: list[str]
    status: JobStatus
    created_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
    archived_at: datetime | None = None
    results: dict[int, ExtractionResult] = field(default_factory=dict)
    # Slot -> claim time.
    in_flight: dict[int, datetime] = field(default_factory=dict)

    def in_flight_identifiers(self) -> set[str]:
        return {self.identifiers[slot] for slot in self.in_flight}

    def counts(self) -> JobCounts:
        return JobCounts.from_results(len(self.identifiers), self.results.values())


class MemoryJobStore(JobStore):
    """Process-local store guarded by one re-entrant lock."""

    def __init__(self) -> None:
        self._lock = RLock()
        # Insertion order doubles as creation order.
        self._jobs: dict[str, _JobRecord] = {}
        self._paused = False

    def create_job(self, identifiers: Sequence[str]) -> Job:
        record = _JobRecord(
            id=new_job_id(),
            identifiers=list(identifiers),
            status=JobStatus.PENDING,
            created_at=utcnow(),
        )
        with self._lock:
            self._jobs[record.id] = record
            return self._snapshot(record)

    def get_job(self, job_id: str, include_results: bool = False) -> Job:
        with self._lock:
            return self._snapshot(self._record(job_id), include_results)

    def list_jobs(
        self, status: JobStatus | None = None, archived: bool | None = False
    ) -> list[Job]:
        with self._lock:
            return [
                self._snapshot(record)
                for record in self._jobs.values()
                if (status is None or record.status is status)
                and (archived is None or (record.archived_at is not None) is archived)
            ]

    def claim_next(self, after_job_id: str | None = None) -> WorkItem | None:
        with self._lock:
            active = [job_id for job_id, rec in self._jobs.items() if rec.status.is_active]
            for job_id in rotate_after(active, after_job_id):
                record = self._jobs[job_id]
                busy = record.in_flight_identifiers()
                for slot, identifier in enumerate(record.identifiers):
                    if slot in record.results or slot in record.in_flight or identifier in busy:
                        continue
                    record.in_flight[slot] = utcnow()
                    if record.status is JobStatus.PENDING:
                        record.status = JobStatus.PROCESSING
                    return WorkItem(job_id=job_id, slot=slot, identifier=identifier)
        return None

    def release(self, item: WorkItem) -> None:
        with self._lock:
            record = self._jobs.get(item.job_id)
            if record is not None:
                record.in_flight.pop(item.slot, None)

    def commit(self, item: WorkItem, result: ExtractionResult) -> CommitOutcome:
        with self._lock:
            record = self._jobs.get(item.job_id)
            if record is None:
                return CommitOutcome(committed=False)
            record.in_flight.pop(item.slot, None)
            if not record.status.is_active:
                return CommitOutcome(committed=False, job=self._snapshot(record))
            record.results[item.slot] = result
            completed = False
            if len(record.results) == len(record.identifiers):
                record.status = JobStatus.COMPLETED
                record.completed_at = utcnow()
                completed = True
            return CommitOutcome(
                committed=True, job=self._snapshot(record), job_completed=completed
            )

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            record = self._jobs.get(job_id)
            return record is not None and record.status.is_active

    def cancel(self, job_id: str) -> Job:
        with self._lock:
            record = self._record(job_id)
            if record.status is JobStatus.CANCELLED:
                return self._snapshot(record)
            if not record.status.is_active:
                raise InvalidJobStateError(
                    f"Cannot cancel job {job_id} in status {record.status.value}"
                )
            record.status = JobStatus.CANCELLED
            record.completed_at = utcnow()
            return self._snapshot(record)

    def reset_failed(self, job_id: str) -> int:
        with self._lock:
            record = self._record(job_id)
            if record.archived_at is not None:
                raise InvalidJobStateError(f"Cannot retry archived job {job_id}")
            if record.status not in (JobStatus.COMPLETED, JobStatus.PROCESSING):
                raise InvalidJobStateError(
                    f"Cannot retry job {job_id} in status {record.status.value}"
                )
            failed_slots = [
                slot
                for slot, result in record.results.items()
                if result.status is ResultStatus.ERROR
            ]
            for slot in failed_slots:
                del record.results[slot]
            if failed_slots and record.status is JobStatus.COMPLETED:
                record.status = JobStatus.PROCESSING
                record.completed_at = None
            return len(failed_slots)

    def fail_job(self, job_id: str, message: str) -> Job:
        with self._lock:
            record = self._record(job_id)
            if record.status.is_active:
                record.status = JobStatus.FAILED
                record.error_message = message
                record.completed_at = utcnow()
            return self._snapshot(record)

    def recover_in_flight(self, older_than: datetime | None = None) -> int:
        with self._lock:
            recovered = 0
            for record in self._jobs.values():
                stale = [
                    slot
                    for slot, claimed_at in record.in_flight.items()
                    if older_than is None or claimed_at < older_than
                ]
                for slot in stale:
                    del record.in_flight[slot]
                recovered += len(stale)
            return recovered

    def delete_job(self, job_id: str) -> None:
        with self._lock:
            record = self._record(job_id)
            if record.status.is_active:
                raise InvalidJobStateError(
                    f"Cannot remove job {job_id} in status {record.status.value}"
                )
            del self._jobs[job_id]

    def set_archived(self, job_id: str, archived: bool) -> Job:
        with self._lock:
            record = self._record(job_id)
            if archived:
                if record.status is not JobStatus.COMPLETED:
                    raise InvalidJobStateError(
                        f"Cannot archive job {job_id} in status {record.status.value}"
                    )
                if record.archived_at is None:
                    record.archived_at = utcnow()
            else:
                if record.archived_at is None:
                    raise InvalidJobStateError(f"Job {job_id} is not archived")
                record.archived_at = None
            return self._snapshot(record)

    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._paused = paused

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def delete_jobs_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                job_id
                for job_id, record in self._jobs.items()
                if record.status.is_terminal
                and record.archived_at is None
                and (record.completed_at or record.created_at) < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    # ------------------------------------------------------------------
    def _record(self, job_id: str) -> _JobRecord:
        record = self._jobs.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    @staticmethod
    def _snapshot(record: _JobRecord, include_results: bool = False) -> Job:
        return Job(
            id=record.id,
            identifiers=list(record.identifiers),
            status=record.status,
            counts=record.counts(),
            created_at=record.created_at,
            completed_at=record.completed_at,
            error_message=record.error_message,
            archived_at=record.archived_at,
            results=dict(record.results) if include_results else None,
        )


__all__ = ["JobStore", "MemoryJobStore", "rotate_after", "utcnow", "new_job_id"]
