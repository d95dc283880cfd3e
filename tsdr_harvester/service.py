"""Job lifecycle API: the surface used by the CLI and any embedding caller."""

from __future__ import annotations

import math
from collections import Counter
from datetime import timedelta
from pathlib import Path
from typing import Iterable, Sequence

import structlog

from .config import ConfigRepository, ExportFormat, GlobalConfig, StorageBackend
from .engine import (
    Dispatcher,
    DispatcherSettings,
    HealthStatus,
    JobEventHooks,
    RateLimiter,
    RecordExtractor,
    TsdrFetcher,
)
from .engine.exporter import create_exporter
from .errors import InvalidJobStateError, InvalidSubmissionError
from .infra import SQLiteManager
from .jobs import (
    ExtractionResult,
    Job,
    JobStatus,
    JobStore,
    MemoryJobStore,
    ResultStatus,
    SQLiteJobStore,
)
from .jobs.store import utcnow
from .logging_conf import component_logger


class JobService:
    """Submit, observe, cancel, retry and export harvesting jobs."""

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        config: GlobalConfig,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.config = config
        self.logger = logger or component_logger("service")

    # ------------------------------------------------------------------
    # Core lifecycle
    # ------------------------------------------------------------------
    def submit(self, identifiers: Sequence[str]) -> str:
        """Create a pending job; duplicates are kept and processed separately."""

        if isinstance(identifiers, (str, bytes)):
            raise InvalidSubmissionError("identifiers must be a sequence of strings")
        cleaned: list[str] = []
        for position, identifier in enumerate(identifiers):
            if not isinstance(identifier, str) or not identifier.strip():
                raise InvalidSubmissionError(
                    f"Identifier at position {position} is empty or not a string"
                )
            cleaned.append(identifier.strip())
        if not cleaned:
            raise InvalidSubmissionError("At least one identifier is required")
        job = self.store.create_job(cleaned)
        self.logger.info("job_submitted", job_id=job.id, total=len(cleaned))
        self.dispatcher.wake()
        return job.id

    def get_status(self, job_id: str, include_results: bool = False) -> Job:
        return self.store.get_job(job_id, include_results=include_results)

    def cancel(self, job_id: str) -> Job:
        job = self.store.cancel(job_id)
        self.logger.info("job_cancelled", job_id=job_id, processed=job.counts.processed)
        return job

    def retry_failed(self, job_id: str) -> int:
        reset = self.store.reset_failed(job_id)
        self.logger.info("job_retry_requested", job_id=job_id, reset=reset)
        if reset:
            self.dispatcher.wake()
        return reset

    def export_results(self, job_id: str, partial: bool = False) -> list[ExtractionResult]:
        """Results in submission order.

        A completed job yields one result per identifier. With ``partial`` the
        attempted slots of an unfinished job are returned as well.
        """

        job = self.store.get_job(job_id, include_results=True)
        if job.status is not JobStatus.COMPLETED and not partial:
            raise InvalidJobStateError(
                f"Job {job_id} is {job.status.value}; request a partial export instead"
            )
        return job.ordered_results()

    def remove_job(self, job_id: str) -> None:
        """Delete a finished job and its results; active jobs must be cancelled first."""

        self.store.delete_job(job_id)
        self.logger.info("job_removed", job_id=job_id)

    def archive_job(self, job_id: str) -> Job:
        job = self.store.set_archived(job_id, True)
        self.logger.info("job_archived", job_id=job_id)
        return job

    def unarchive_job(self, job_id: str) -> Job:
        job = self.store.set_archived(job_id, False)
        self.logger.info("job_unarchived", job_id=job_id)
        return job

    # ------------------------------------------------------------------
    # Queue control
    # ------------------------------------------------------------------
    def pause_queue(self) -> None:
        """Stop claiming new items for every process sharing the store."""

        self.dispatcher.pause()

    def resume_queue(self) -> None:
        self.dispatcher.resume()

    def is_queue_paused(self) -> bool:
        return self.dispatcher.paused

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        """Jobs oldest first, archived ones excluded."""

        return self.store.list_jobs(status)

    def list_archived_jobs(self) -> list[Job]:
        return self.store.list_jobs(archived=True)

    def queue_stats(self) -> dict[str, object]:
        jobs = self.store.list_jobs(archived=None)
        tally = Counter(job.status for job in jobs)
        stats: dict[str, object] = {status.value: tally.get(status, 0) for status in JobStatus}
        stats["archived"] = sum(1 for job in jobs if job.archived)
        stats["dispatcher"] = self.dispatcher.stats()
        return stats

    def processing_info(self) -> dict[str, int]:
        throttle = self.config.throttle
        delay_ms = throttle.delay_between_requests_ms
        return {
            "requests_per_minute": throttle.requests_per_minute,
            "worker_concurrency": throttle.worker_concurrency or 1,
            "delay_between_requests_ms": delay_ms,
            "estimated_seconds_per_100_records": math.ceil(100 * delay_ms / 1000),
        }

    def health_check(self) -> HealthStatus:
        return self.dispatcher.fetcher.health_check()

    # ------------------------------------------------------------------
    # Reports and housekeeping
    # ------------------------------------------------------------------
    def write_report(
        self,
        job_id: str,
        path: Path,
        fmt: ExportFormat | str = ExportFormat.CSV,
        include_filtered: bool = False,
        partial: bool = False,
    ) -> int:
        """Write the export to ``path``; returns the number of rows written.

        Attorney-represented filings are left out unless ``include_filtered``.
        """

        fmt = ExportFormat(fmt)
        results: Iterable[ExtractionResult] = self.export_results(job_id, partial=partial)
        if not include_filtered:
            results = [r for r in results if r.status is not ResultStatus.HAS_ATTORNEY]
        exporter = create_exporter(path, fmt.value)
        try:
            exporter.export_many(results)
        finally:
            exporter.close()
        self.logger.info(
            "report_written",
            job_id=job_id,
            path=str(path),
            format=fmt.value,
            rows=exporter.written,
        )
        return exporter.written

    def default_report_path(self, job_id: str, fmt: ExportFormat | str) -> Path:
        fmt = ExportFormat(fmt)
        extension = "jsonl" if fmt is ExportFormat.JSON else fmt.value
        return self.config.outputs_dir / f"uspto-results-{job_id}.{extension}"

    def cleanup_old_jobs(self, older_than_hours: float | None = None) -> int:
        hours = older_than_hours
        if hours is None:
            hours = self.config.storage.job_retention_hours
        cutoff = utcnow() - timedelta(hours=hours)
        removed = self.store.delete_jobs_before(cutoff)
        self.logger.info("old_jobs_cleaned", removed=removed, older_than_hours=hours)
        return removed

    def close(self) -> None:
        self.dispatcher.fetcher.close()
        self.store.close()


def build_store(config: GlobalConfig, project_root: Path) -> JobStore:
    if config.storage.backend is StorageBackend.MEMORY:
        return MemoryJobStore()
    return SQLiteJobStore(SQLiteManager(), config.storage.resolved_path(project_root))


def create_service(
    repository: ConfigRepository,
    hooks: JobEventHooks | None = None,
    store: JobStore | None = None,
    fetcher: TsdrFetcher | None = None,
) -> JobService:
    """Wire store, fetcher, extractor, limiter and dispatcher from config."""

    config = repository.load_global_config()
    if not config.outputs_dir.is_absolute():
        config = config.model_copy(
            update={"outputs_dir": repository.locator.resolve(config.outputs_dir)}
        )
    store = store or build_store(config, repository.locator.project_root)
    fetcher = fetcher or TsdrFetcher(config.api, logger=component_logger("fetcher"))
    dispatcher = Dispatcher(
        store=store,
        fetcher=fetcher,
        extractor=RecordExtractor(logger=component_logger("extractor")),
        rate_limiter=RateLimiter(config.throttle.requests_per_minute, window_seconds=60.0),
        settings=DispatcherSettings.from_throttle(
            config.throttle,
            poll_interval=config.poll_interval_seconds,
            request_timeout=config.api.request_timeout,
        ),
        hooks=hooks,
    )
    return JobService(store=store, dispatcher=dispatcher, config=config)


__all__ = ["JobService", "build_store", "create_service"]
