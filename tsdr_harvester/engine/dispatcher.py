"""Dispatcher turning active jobs' pending slots into stored results.

One dispatch loop claims work from the job store only when a worker slot is
free, so the store stays the single source of truth for what is pending. Each
claimed ``WorkItem`` goes through rate limiter -> fetcher -> extractor ->
``store.commit``. Transient fetch failures wait on a delayed heap with
exponential backoff while keeping their claim, which also keeps the
identifier's in-flight marker set so no duplicate fetch can start meanwhile.
"""

from __future__ import annotations

import heapq
import itertools
import time
from dataclasses import dataclass, field
from datetime import timedelta
from threading import Event, Lock, Thread
from typing import Callable

import structlog

from ..config import ThrottleConfig
from ..errors import (
    FatalStoreError,
    RecordNotFoundError,
    SourceAuthError,
    TransientFetchError,
)
from ..jobs.models import ExtractionResult, Job, WorkItem
from ..jobs.store import JobStore, utcnow
from ..logging_conf import component_logger
from .extractor import RecordExtractor
from .fetcher import TsdrFetcher
from .rate_limiter import RateLimiter
from .worker_pool import WorkerPool

UNEXPECTED_ERROR = "Unexpected error during processing"


@dataclass(slots=True)
class JobEventHooks:
    """Optional best-effort notifications; failures never touch job state."""

    on_item_completed: Callable[[str, ExtractionResult], None] | None = None
    on_job_completed: Callable[[Job], None] | None = None


@dataclass(slots=True)
class DispatcherSettings:
    concurrency: int = 5
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 60.0
    poll_interval_seconds: float = 0.5
    # Claims older than this are taken to belong to a dead process.
    stale_claim_seconds: float = 300.0

    @classmethod
    def from_throttle(
        cls,
        throttle: ThrottleConfig,
        poll_interval: float = 0.5,
        request_timeout: float = 30.0,
    ) -> "DispatcherSettings":
        return cls(
            concurrency=throttle.worker_concurrency or 1,
            max_attempts=throttle.max_attempts,
            backoff_base_seconds=throttle.backoff_base_seconds,
            backoff_max_seconds=throttle.backoff_max_seconds,
            poll_interval_seconds=poll_interval,
            stale_claim_seconds=throttle.max_attempts
            * (request_timeout + throttle.backoff_max_seconds)
            + 60.0,
        )

    def backoff_for(self, attempts: int) -> float:
        delay = self.backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return min(delay, self.backoff_max_seconds)


@dataclass(order=True)
class _Delayed:
    due: float
    seq: int
    item: WorkItem = field(compare=False)


class Dispatcher:
    """Bounded-concurrency executor for every active job in a ``JobStore``."""

    def __init__(
        self,
        store: JobStore,
        fetcher: TsdrFetcher,
        extractor: RecordExtractor,
        rate_limiter: RateLimiter,
        settings: DispatcherSettings | None = None,
        hooks: JobEventHooks | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.rate_limiter = rate_limiter
        self.settings = settings or DispatcherSettings()
        self.hooks = hooks or JobEventHooks()
        self.logger = logger or component_logger("dispatcher")
        self.pool = WorkerPool(self.settings.concurrency, name="harvester-worker")
        self._delayed: list[_Delayed] = []
        self._delayed_lock = Lock()
        self._seq = itertools.count()
        self._last_job_id: str | None = None
        self._wake = Event()
        self._stop = Event()
        self._thread: Thread | None = None
        self._recovered = False
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._stopped:
            raise RuntimeError("Dispatcher cannot be restarted after stop()")
        if self._thread is not None and self._thread.is_alive():
            return
        self._recover()
        self._stop.clear()
        self._thread = Thread(target=self._run, name="harvester-dispatch", daemon=True)
        self._thread.start()
        self.logger.info("dispatcher_started", concurrency=self.settings.concurrency)

    def stop(self, wait: bool = True) -> None:
        self._stopped = True
        self._stop.set()
        self._wake.set()
        self.rate_limiter.close()
        if self._thread is not None and wait:
            self._thread.join()
        self.pool.shutdown(wait=wait)
        self._release_delayed()
        self.logger.info("dispatcher_stopped")

    def wake(self) -> None:
        """Nudge the loop after a submit or retry instead of waiting a poll."""

        self._wake.set()

    @property
    def paused(self) -> bool:
        return self.store.is_paused()

    def pause(self) -> None:
        """Stop claiming new work. Items already running finish normally."""

        self.store.set_paused(True)
        self.logger.info("queue_paused", in_flight=self.pool.active)

    def resume(self) -> None:
        self.store.set_paused(False)
        self.logger.info("queue_resumed")
        self._wake.set()

    def run_until_idle(self, timeout: float | None = None) -> bool:
        """Dispatch in the calling thread until no work remains.

        Returns False when ``timeout`` elapsed first. Must not be combined
        with a running ``start()`` loop.
        """

        self._recover()
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._dispatch_once():
                continue
            if self.pool.idle and (not self.delayed_count() or self.paused):
                if not self._dispatch_once():
                    return True
                continue
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self._wait_for_change()

    def stats(self) -> dict[str, object]:
        return {
            "in_flight": self.pool.active,
            "paused": self.paused,
            "delayed_retries": self.delayed_count(),
            "concurrency": self.settings.concurrency,
            "rate_limiter": self.rate_limiter.snapshot(),
        }

    def delayed_count(self) -> int:
        with self._delayed_lock:
            return len(self._delayed)

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                progressed = self._dispatch_once()
            except FatalStoreError as exc:
                self.logger.error("dispatch_store_unavailable", error=str(exc))
                progressed = False
            except Exception as exc:  # noqa: BLE001
                self.logger.exception("dispatch_loop_error", error=str(exc))
                progressed = False
            if not progressed:
                self._wait_for_change()

    def _wait_for_change(self) -> None:
        timeout = self.settings.poll_interval_seconds
        next_due = self._next_due()
        if next_due is not None:
            timeout = min(timeout, max(next_due - time.monotonic(), 0.0))
        self._wake.wait(timeout)
        self._wake.clear()

    def _dispatch_once(self) -> bool:
        """Start at most one item. True when something was started or dropped."""

        if not self.pool.reserve(timeout=self.settings.poll_interval_seconds):
            return False
        try:
            paused = self.store.is_paused()
        except FatalStoreError:
            self.pool.cancel_reservation()
            raise
        if paused:
            self.pool.cancel_reservation()
            return False
        item = self._pop_due()
        if item is not None:
            try:
                active = self.store.is_active(item.job_id)
            except FatalStoreError as exc:
                self.pool.cancel_reservation()
                self._abort_job(item.job_id, exc, self.logger.bind(job_id=item.job_id, slot=item.slot))
                self._release(item)
                return True
            if not active:
                self.pool.cancel_reservation()
                self._release(item)
                self.logger.info("retry_dropped_inactive_job", job_id=item.job_id, slot=item.slot)
                return True
        else:
            try:
                item = self.store.claim_next(after_job_id=self._last_job_id)
            except FatalStoreError:
                self.pool.cancel_reservation()
                raise
            if item is None:
                self.pool.cancel_reservation()
                return False
            self._last_job_id = item.job_id
        try:
            self.pool.submit(self._process, item)
        except RuntimeError:
            # Pool already shut down.
            self._release(item)
            return False
        return True

    def _next_due(self) -> float | None:
        with self._delayed_lock:
            return self._delayed[0].due if self._delayed else None

    def _pop_due(self) -> WorkItem | None:
        with self._delayed_lock:
            if self._delayed and self._delayed[0].due <= time.monotonic():
                return heapq.heappop(self._delayed).item
        return None

    def _schedule_retry(self, item: WorkItem, delay: float) -> None:
        with self._delayed_lock:
            heapq.heappush(
                self._delayed, _Delayed(time.monotonic() + delay, next(self._seq), item)
            )
        self._wake.set()

    def _release_delayed(self) -> None:
        with self._delayed_lock:
            pending = [entry.item for entry in self._delayed]
            self._delayed.clear()
        for item in pending:
            self._release(item)

    def _release(self, item: WorkItem) -> None:
        try:
            self.store.release(item)
        except FatalStoreError as exc:
            self.logger.error("release_failed", job_id=item.job_id, slot=item.slot, error=str(exc))

    def _recover(self) -> None:
        if self._recovered:
            return
        cutoff = utcnow() - timedelta(seconds=self.settings.stale_claim_seconds)
        recovered = self.store.recover_in_flight(older_than=cutoff)
        self._recovered = True
        if recovered:
            self.logger.warning("recovered_in_flight_items", count=recovered)

    # ------------------------------------------------------------------
    # Per item work (runs on worker threads)
    # ------------------------------------------------------------------
    def _process(self, item: WorkItem) -> None:
        log = self.logger.bind(job_id=item.job_id, identifier=item.identifier, slot=item.slot)
        try:
            self._process_item(item, log)
        except FatalStoreError as exc:
            self._abort_job(item.job_id, exc, log)
        except Exception as exc:  # noqa: BLE001
            log.exception("item_processing_crashed", error=str(exc))
            try:
                self._commit(item, ExtractionResult.failure(item.identifier, UNEXPECTED_ERROR), log)
            except FatalStoreError as store_exc:
                self._abort_job(item.job_id, store_exc, log)

    def _process_item(self, item: WorkItem, log: structlog.BoundLogger) -> None:
        if not self.store.is_active(item.job_id):
            self.store.release(item)
            log.debug("item_dropped_inactive_job")
            return
        if not self.rate_limiter.acquire(item.job_id):
            self.store.release(item)
            return
        if not self.store.is_active(item.job_id):
            self.store.release(item)
            log.debug("item_dropped_inactive_job")
            return

        try:
            response = self.fetcher.fetch(item.identifier)
        except TransientFetchError as exc:
            item.attempts += 1
            if item.attempts < self.settings.max_attempts:
                delay = self.settings.backoff_for(item.attempts)
                log.info(
                    "fetch_retry_scheduled",
                    attempts=item.attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                self._schedule_retry(item, delay)
                return
            log.warning("fetch_attempts_exhausted", attempts=item.attempts, error=str(exc))
            result = ExtractionResult.failure(item.identifier, str(exc))
        except RecordNotFoundError:
            result = ExtractionResult.not_found(item.identifier)
        except SourceAuthError as exc:
            self.store.release(item)
            log.error("source_rejected_credentials", status_code=exc.status_code)
            self.store.fail_job(item.job_id, str(exc))
            return
        else:
            result = self.extractor.extract(response.content, item.identifier)
        self._commit(item, result, log)

    def _commit(self, item: WorkItem, result: ExtractionResult, log: structlog.BoundLogger) -> None:
        outcome = self.store.commit(item, result)
        if not outcome.committed:
            log.info("result_discarded_inactive_job", status=result.status.value)
            return
        log.debug("item_committed", status=result.status.value)
        self._notify(self.hooks.on_item_completed, item.job_id, result)
        if outcome.job_completed and outcome.job is not None:
            counts = outcome.job.counts
            log.info(
                "job_completed",
                total=counts.total,
                succeeded=counts.succeeded,
                failed=counts.failed,
                had_attorney=counts.had_attorney,
            )
            self._notify(self.hooks.on_job_completed, outcome.job)

    def _abort_job(self, job_id: str, exc: FatalStoreError, log: structlog.BoundLogger) -> None:
        log.error("job_store_failure", error=str(exc))
        try:
            self.store.fail_job(job_id, str(exc))
        except FatalStoreError as again:
            log.error("job_fail_not_recorded", error=str(again))

    def _notify(self, hook: Callable | None, *args: object) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("event_hook_failed", hook=getattr(hook, "__name__", repr(hook)), error=str(exc))


__all__ = ["Dispatcher", "DispatcherSettings", "JobEventHooks", "UNEXPECTED_ERROR"]
