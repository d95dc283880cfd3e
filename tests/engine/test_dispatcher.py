from __future__ import annotations

import threading
import time

import pytest

from tsdr_harvester.engine import DispatcherSettings, JobEventHooks
from tsdr_harvester.engine.dispatcher import UNEXPECTED_ERROR
from tsdr_harvester.errors import FatalStoreError
from tsdr_harvester.jobs import ExtractionResult, JobStatus, MemoryJobStore, ResultStatus


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_large_batch_with_transient_failures(job_store, fake_fetcher, make_dispatcher) -> None:
    identifiers = [f"97{index:06d}" for index in range(500)]
    flaky = {identifier: 2 for identifier in identifiers[::10]}
    fetcher = fake_fetcher(failures=flaky)
    dispatcher = make_dispatcher(job_store, fetcher)
    job = job_store.create_job(identifiers)

    assert dispatcher.run_until_idle(timeout=60)

    final = job_store.get_job(job.id, include_results=True)
    assert final.status is JobStatus.COMPLETED
    assert final.counts.processed == 500
    assert final.counts.failed == 0
    assert len(fetcher.calls) == 500 + 2 * len(flaky)
    assert fetcher.max_active <= 10
    assert [result.identifier for result in final.ordered_results()] == identifiers


def test_cancel_discards_in_flight_results(fake_fetcher, make_dispatcher) -> None:
    store = MemoryJobStore()
    gate = threading.Event()
    fetcher = fake_fetcher(gate=gate)
    settings = DispatcherSettings(concurrency=5, backoff_base_seconds=0.01, backoff_max_seconds=0.05, poll_interval_seconds=0.01)
    dispatcher = make_dispatcher(store, fetcher, settings=settings)
    job = store.create_job([f"9700{index:04d}" for index in range(20)])

    dispatcher.start()
    assert wait_until(lambda: len(fetcher.started) == 5)
    store.cancel(job.id)
    gate.set()
    assert wait_until(lambda: dispatcher.pool.idle)
    time.sleep(0.05)

    final = store.get_job(job.id, include_results=True)
    assert final.status is JobStatus.CANCELLED
    assert final.counts.processed == 0
    assert final.ordered_results() == []
    assert len(fetcher.calls) == 5


def test_duplicate_identifiers_keep_submission_order(job_store, fake_fetcher, make_dispatcher) -> None:
    fetcher = fake_fetcher()
    dispatcher = make_dispatcher(job_store, fetcher)
    job = job_store.create_job(["97000001", "97000002", "97000001", "97000003"])

    assert dispatcher.run_until_idle(timeout=10)

    final = job_store.get_job(job.id, include_results=True)
    assert [r.identifier for r in final.ordered_results()] == ["97000001", "97000002", "97000001", "97000003"]
    assert fetcher.calls.count("97000001") == 2
    assert final.counts.processed == 4


def test_exhausted_retries_then_retry_failed(job_store, fake_fetcher, make_dispatcher) -> None:
    fetcher = fake_fetcher(failures={"97000002": 3})
    dispatcher = make_dispatcher(job_store, fetcher)
    job = job_store.create_job(["97000001", "97000002"])

    assert dispatcher.run_until_idle(timeout=10)
    first = job_store.get_job(job.id, include_results=True)
    assert first.status is JobStatus.COMPLETED
    assert first.counts.failed == 1
    failed = first.result_for("97000002")
    assert failed.status is ResultStatus.ERROR
    assert "503" in failed.error_message
    assert fetcher.calls.count("97000002") == 3

    assert job_store.reset_failed(job.id) == 1
    assert job_store.get_job(job.id).status is JobStatus.PROCESSING
    assert dispatcher.run_until_idle(timeout=10)

    second = job_store.get_job(job.id, include_results=True)
    assert second.status is JobStatus.COMPLETED
    assert second.counts.failed == 0
    assert second.result_for("97000002").status is ResultStatus.SUCCESS


def test_not_found_is_recorded_without_retry(job_store, fake_fetcher, make_dispatcher) -> None:
    fetcher = fake_fetcher(outcomes={"97000009": "not_found"})
    dispatcher = make_dispatcher(job_store, fetcher)
    job = job_store.create_job(["97000009"])

    assert dispatcher.run_until_idle(timeout=10)

    final = job_store.get_job(job.id, include_results=True)
    assert final.status is JobStatus.COMPLETED
    assert final.counts.not_found == 1
    assert final.counts.succeeded == 1
    assert final.result_for("97000009").error_message == "Trademark not found"
    assert fetcher.calls == ["97000009"]


def test_auth_error_fails_the_job(fake_fetcher, make_dispatcher) -> None:
    store = MemoryJobStore()
    fetcher = fake_fetcher(outcomes={"97000001": "auth"})
    settings = DispatcherSettings(concurrency=1, backoff_base_seconds=0.01, backoff_max_seconds=0.05, poll_interval_seconds=0.01)
    dispatcher = make_dispatcher(store, fetcher, settings=settings)
    job = store.create_job(["97000001", "97000002", "97000003"])

    assert dispatcher.run_until_idle(timeout=10)

    final = store.get_job(job.id)
    assert final.status is JobStatus.FAILED
    assert final.error_message == "API authentication failed"
    assert fetcher.calls == ["97000001"]


def test_store_failure_on_commit_fails_the_job(fake_fetcher, make_dispatcher) -> None:
    class BrokenCommitStore(MemoryJobStore):
        def commit(self, item, result):
            if item.identifier == "97000002":
                raise FatalStoreError("disk full")
            return super().commit(item, result)

    store = BrokenCommitStore()
    dispatcher = make_dispatcher(store, fake_fetcher())
    job = store.create_job(["97000001", "97000002"])

    assert dispatcher.run_until_idle(timeout=10)

    final = store.get_job(job.id)
    assert final.status is JobStatus.FAILED
    assert final.error_message == "disk full"


def test_store_failure_before_retry_fails_the_job_and_frees_the_worker(fake_fetcher, make_dispatcher) -> None:
    class FlakyActiveCheckStore(MemoryJobStore):
        def __init__(self) -> None:
            super().__init__()
            self.raised = False

        def is_active(self, job_id):
            on_worker = threading.current_thread().name.startswith("harvester-worker")
            if not on_worker and not self.raised:
                self.raised = True
                raise FatalStoreError("database is locked")
            return super().is_active(job_id)

    store = FlakyActiveCheckStore()
    settings = DispatcherSettings(concurrency=1, backoff_base_seconds=0.01, backoff_max_seconds=0.05, poll_interval_seconds=0.01)
    dispatcher = make_dispatcher(store, fake_fetcher(failures={"97000001": 1}), settings=settings)
    job = store.create_job(["97000001"])

    assert dispatcher.run_until_idle(timeout=5)

    final = store.get_job(job.id)
    assert store.raised
    assert final.status is JobStatus.FAILED
    assert final.error_message == "database is locked"
    assert dispatcher.pool.active == 0
    assert dispatcher.delayed_count() == 0

    follow_up = store.create_job(["97000003"])
    assert dispatcher.run_until_idle(timeout=5)
    assert store.get_job(follow_up.id).status is JobStatus.COMPLETED


def test_unexpected_extractor_error_is_recorded(job_store, fake_fetcher, make_dispatcher) -> None:
    dispatcher = make_dispatcher(job_store, fake_fetcher())

    def explode(document, identifier):
        raise RuntimeError("boom")

    dispatcher.extractor.extract = explode
    job = job_store.create_job(["97000001"])

    assert dispatcher.run_until_idle(timeout=10)

    result = job_store.get_job(job.id, include_results=True).result_for("97000001")
    assert result.status is ResultStatus.ERROR
    assert result.error_message == UNEXPECTED_ERROR


def test_hooks_fire_and_hook_failures_are_ignored(job_store, fake_fetcher, make_dispatcher) -> None:
    completed_items: list[str] = []
    completed_jobs: list[str] = []

    def on_item(job_id, result) -> None:
        completed_items.append(result.identifier)
        raise RuntimeError("subscriber down")

    hooks = JobEventHooks(on_item_completed=on_item, on_job_completed=lambda job: completed_jobs.append(job.id))
    dispatcher = make_dispatcher(job_store, fake_fetcher(), hooks=hooks)
    job = job_store.create_job(["97000001", "97000002"])

    assert dispatcher.run_until_idle(timeout=10)

    assert sorted(completed_items) == ["97000001", "97000002"]
    assert completed_jobs == [job.id]
    assert job_store.get_job(job.id).status is JobStatus.COMPLETED


def test_jobs_are_served_fairly(fake_fetcher, make_dispatcher) -> None:
    store = MemoryJobStore()
    fetcher = fake_fetcher()
    settings = DispatcherSettings(concurrency=1, poll_interval_seconds=0.01)
    dispatcher = make_dispatcher(store, fetcher, settings=settings)
    big = store.create_job([f"9710{index:04d}" for index in range(6)])
    small = store.create_job(["97200001", "97200002"])

    assert dispatcher.run_until_idle(timeout=10)

    assert fetcher.calls[:4] == ["97100000", "97200001", "97100001", "97200002"]
    assert store.get_job(big.id).status is JobStatus.COMPLETED
    assert store.get_job(small.id).status is JobStatus.COMPLETED


def test_stopped_dispatcher_cannot_restart(fake_fetcher, make_dispatcher) -> None:
    dispatcher = make_dispatcher(MemoryJobStore(), fake_fetcher())
    dispatcher.start()
    dispatcher.stop()

    with pytest.raises(RuntimeError):
        dispatcher.start()


def test_backoff_grows_exponentially_and_is_capped() -> None:
    settings = DispatcherSettings(backoff_base_seconds=2.0, backoff_max_seconds=10.0)

    assert [settings.backoff_for(n) for n in range(1, 5)] == [2.0, 4.0, 8.0, 10.0]


def test_fresh_claims_held_elsewhere_are_left_alone(job_store, fake_fetcher, make_dispatcher) -> None:
    fetcher = fake_fetcher()
    dispatcher = make_dispatcher(job_store, fetcher)
    job = job_store.create_job(["97000001", "97000002"])
    held = job_store.claim_next()

    assert dispatcher.run_until_idle(timeout=5)

    assert fetcher.calls == ["97000002"]
    assert job_store.get_job(job.id).status is JobStatus.PROCESSING
    outcome = job_store.commit(held, ExtractionResult.not_found(held.identifier))
    assert outcome.job_completed


def test_stale_claims_are_recovered_on_start(job_store, fake_fetcher, make_dispatcher) -> None:
    fetcher = fake_fetcher()
    settings = DispatcherSettings(poll_interval_seconds=0.01, stale_claim_seconds=0.0)
    job = job_store.create_job(["97000001"])
    job_store.claim_next()
    time.sleep(0.01)
    dispatcher = make_dispatcher(job_store, fetcher, settings=settings)

    assert dispatcher.run_until_idle(timeout=5)

    assert fetcher.calls == ["97000001"]
    assert job_store.get_job(job.id).status is JobStatus.COMPLETED


def test_stale_claim_window_covers_every_attempt(sample_global_config) -> None:
    throttle = sample_global_config.throttle.model_copy(update={"max_attempts": 3, "backoff_max_seconds": 60.0})

    settings = DispatcherSettings.from_throttle(throttle, request_timeout=30.0)

    assert settings.stale_claim_seconds == 3 * (30.0 + 60.0) + 60.0


def test_paused_queue_claims_nothing_until_resumed(job_store, fake_fetcher, make_dispatcher) -> None:
    fetcher = fake_fetcher()
    dispatcher = make_dispatcher(job_store, fetcher)
    dispatcher.pause()
    job = job_store.create_job(["97000001", "97000002"])

    assert dispatcher.run_until_idle(timeout=5)
    assert dispatcher.paused
    assert dispatcher.stats()["paused"] is True
    assert fetcher.calls == []
    assert job_store.get_job(job.id).status is JobStatus.PENDING

    dispatcher.resume()
    assert dispatcher.run_until_idle(timeout=5)

    assert not dispatcher.paused
    assert sorted(fetcher.calls) == ["97000001", "97000002"]
    assert job_store.get_job(job.id).status is JobStatus.COMPLETED


def test_pause_lets_running_items_finish(fake_fetcher, make_dispatcher) -> None:
    store = MemoryJobStore()
    gate = threading.Event()
    fetcher = fake_fetcher(gate=gate)
    settings = DispatcherSettings(concurrency=2, poll_interval_seconds=0.01)
    dispatcher = make_dispatcher(store, fetcher, settings=settings)
    job = store.create_job([f"9700{index:04d}" for index in range(6)])

    dispatcher.start()
    assert wait_until(lambda: len(fetcher.started) == 2)
    dispatcher.pause()
    gate.set()
    assert wait_until(lambda: store.get_job(job.id).counts.processed == 2)
    time.sleep(0.05)
    assert len(fetcher.started) == 2

    dispatcher.resume()
    assert wait_until(lambda: store.get_job(job.id).status is JobStatus.COMPLETED)
    assert len(fetcher.calls) == 6


def test_documents_are_parsed_from_raw_bytes(job_store, fake_fetcher, make_dispatcher, case_xml) -> None:
    def latin1_document(identifier: str) -> bytes:
        document = case_xml(owner_entity="Société Générale").replace('encoding="UTF-8"', 'encoding="ISO-8859-1"')
        return document.encode("latin-1")

    dispatcher = make_dispatcher(job_store, fake_fetcher(document_factory=latin1_document))
    job = job_store.create_job(["97000001"])

    assert dispatcher.run_until_idle(timeout=5)

    result = job_store.get_job(job.id, include_results=True).result_for("97000001")
    assert result.status is ResultStatus.SUCCESS
    assert result.owner_name == "Société Générale"
