"""Shared fixtures: config builders, TSDR document builder and fake fetchers."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence
from xml.sax.saxutils import escape

import pytest

from tsdr_harvester.config import ConfigLocator, ConfigRepository, GlobalConfig
from tsdr_harvester.engine import (
    Dispatcher,
    DispatcherSettings,
    JobEventHooks,
    RateLimiter,
    RecordExtractor,
)
from tsdr_harvester.engine.fetcher import FetchResponse, HealthStatus
from tsdr_harvester.errors import (
    FetchErrorKind,
    RecordNotFoundError,
    SourceAuthError,
    TransientFetchError,
)
from tsdr_harvester.infra import SQLiteManager
from tsdr_harvester.jobs import JobStore, MemoryJobStore, SQLiteJobStore

COMMON_NS = "http://www.wipo.int/standards/XMLSchema/ST96/Common"
TRADEMARK_NS = "http://www.wipo.int/standards/XMLSchema/ST96/Trademark"


def _tag(name: str, value: str | None) -> str:
    if value is None:
        return ""
    return f"<{name}>{escape(value)}</{name}>"


def build_case_xml(
    mark: str | None = "ACME ROCKETS",
    owner_entity: str | None = "Acme Rockets LLC",
    owner_person: str | None = None,
    attorney: str | None = None,
    phone: str | None = "555-010-0100",
    emails: Sequence[tuple[str | None, str]] = (("Main", "owner@acme.example"),),
    filing_date: str | None = "2023-01-05-05:00",
    abandon_date: str | None = "2025-08-19-04:00",
    abandon_reason: str | None = "Abandoned because no Statement of Use was filed.",
    extra_applicants: str = "",
) -> str:
    """Render a minimal ST.96 case-status document."""

    name_parts = _tag("ns1:EntityName", owner_entity)
    if owner_person is not None:
        name_parts += (
            "<ns1:PersonName>" + _tag("ns1:PersonFullName", owner_person) + "</ns1:PersonName>"
        )
    applicant = (
        "<ns2:Applicant><ns1:Contact><ns1:Name>" + name_parts + "</ns1:Name></ns1:Contact></ns2:Applicant>"
    )
    email_nodes = ""
    for purpose, address in emails:
        attribute = f' ns1:emailAddressPurposeCategory="{purpose}"' if purpose else ""
        email_nodes += f"<ns1:EmailAddressText{attribute}>{escape(address)}</ns1:EmailAddressText>"
    correspondent = (
        "<ns2:NationalCorrespondent><ns1:Contact>"
        + ("<ns1:PhoneNumberBag>" + _tag("ns1:PhoneNumber", phone) + "</ns1:PhoneNumberBag>" if phone else "")
        + ("<ns1:EmailAddressBag>" + email_nodes + "</ns1:EmailAddressBag>" if email_nodes else "")
        + "</ns1:Contact></ns2:NationalCorrespondent>"
    )
    attorney_block = ""
    if attorney is not None:
        attorney_block = (
            "<ns2:RecordAttorney><ns1:Contact><ns1:Name><ns1:PersonName>"
            + f"<ns1:PersonFullName>{escape(attorney)}</ns1:PersonFullName>"
            + "</ns1:PersonName></ns1:Name></ns1:Contact></ns2:RecordAttorney>"
        )
    mark_block = ""
    if mark is not None:
        mark_block = (
            "<ns2:MarkRepresentation><ns2:MarkReproduction><ns2:WordMarkSpecification>"
            + _tag("ns2:MarkVerbalElementText", mark)
            + "</ns2:WordMarkSpecification></ns2:MarkReproduction></ns2:MarkRepresentation>"
        )
    national = (
        "<ns2:NationalTrademarkInformation>"
        + _tag("ns2:ApplicationAbandonedDate", abandon_date)
        + _tag("ns2:MarkCurrentStatusExternalDescriptionText", abandon_reason)
        + "</ns2:NationalTrademarkInformation>"
    )
    trademark = (
        "<ns2:Trademark>"
        + _tag("ns2:ApplicationDate", filing_date)
        + mark_block
        + national
        + "<ns2:ApplicantBag>" + extra_applicants + applicant + "</ns2:ApplicantBag>"
        + correspondent
        + attorney_block
        + "</ns2:Trademark>"
    )
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        f'<ns2:TrademarkTransaction xmlns:ns1="{COMMON_NS}" xmlns:ns2="{TRADEMARK_NS}">'
        "<ns2:TrademarkTransactionBody><ns2:TransactionContentBag><ns2:TransactionData>"
        "<ns2:TrademarkBag>" + trademark + "</ns2:TrademarkBag>"
        "</ns2:TransactionData></ns2:TransactionContentBag></ns2:TrademarkTransactionBody>"
        "</ns2:TrademarkTransaction>"
    )


class FakeFetcher:
    """Scripted stand-in for ``TsdrFetcher``.

    ``failures`` maps identifier -> number of transient failures before a
    success. ``outcomes`` maps identifier -> "not_found" | "auth" | "transient".
    ``delays`` maps identifier -> seconds to sleep inside fetch.
    """

    def __init__(
        self,
        failures: dict[str, int] | None = None,
        outcomes: dict[str, str] | None = None,
        delays: dict[str, float] | None = None,
        gate: threading.Event | None = None,
        document_factory: Callable[[str], str | bytes] | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.outcomes = dict(outcomes or {})
        self.delays = dict(delays or {})
        self.gate = gate
        self.document_factory = document_factory or (lambda identifier: build_case_xml(mark=f"MARK {identifier}"))
        self.calls: list[str] = []
        self.started: list[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()

    def fetch(self, identifier: str) -> FetchResponse:
        with self._lock:
            self.started.append(identifier)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                self.gate.wait(10)
            delay = self.delays.get(identifier)
            if delay:
                time.sleep(delay)
            with self._lock:
                self.calls.append(identifier)
                remaining = self.failures.get(identifier, 0)
                if remaining:
                    self.failures[identifier] = remaining - 1
            if remaining:
                raise TransientFetchError(identifier, FetchErrorKind.HTTP_ERROR, "USPTO server error (503)", 503)
            outcome = self.outcomes.get(identifier)
            if outcome == "not_found":
                raise RecordNotFoundError(identifier, FetchErrorKind.HTTP_ERROR, "API error: 404", 404)
            if outcome == "auth":
                raise SourceAuthError(identifier, FetchErrorKind.HTTP_ERROR, "API authentication failed", 401)
            if outcome == "transient":
                raise TransientFetchError(identifier, FetchErrorKind.TIMEOUT, "Request timeout")
            document = self.document_factory(identifier)
            content = document if isinstance(document, bytes) else document.encode("utf-8")
            return FetchResponse(
                identifier=identifier,
                url=f"https://tsdr.test/casestatus/sn{identifier}/info.xml",
                status_code=200,
                text=content.decode("utf-8", errors="replace"),
                content=content,
                elapsed_ms=1.0,
            )
        finally:
            with self._lock:
                self.active -= 1

    def health_check(self) -> HealthStatus:
        return HealthStatus("ok", "USPTO API is accessible")

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def case_xml() -> Callable[..., str]:
    return build_case_xml


@pytest.fixture
def fake_fetcher() -> type[FakeFetcher]:
    return FakeFetcher


@pytest.fixture
def fast_settings() -> DispatcherSettings:
    return DispatcherSettings(
        concurrency=10,
        max_attempts=3,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def make_dispatcher(fast_settings: DispatcherSettings) -> Iterable[Callable[..., Dispatcher]]:
    created: list[Dispatcher] = []

    def _builder(
        store: JobStore,
        fetcher: Any,
        settings: DispatcherSettings | None = None,
        hooks: JobEventHooks | None = None,
        rate_limit: int = 100_000,
    ) -> Dispatcher:
        dispatcher = Dispatcher(
            store=store,
            fetcher=fetcher,
            extractor=RecordExtractor(),
            rate_limiter=RateLimiter(rate_limit, window_seconds=60.0),
            settings=settings or fast_settings,
            hooks=hooks,
        )
        created.append(dispatcher)
        return dispatcher

    yield _builder
    for dispatcher in created:
        dispatcher.stop(wait=True)


@pytest.fixture(params=["memory", "sqlite"])
def job_store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterable[JobStore]:
    if request.param == "memory":
        store: JobStore = MemoryJobStore()
    else:
        store = SQLiteJobStore(SQLiteManager(), tmp_path / "jobs.db")
    yield store
    store.close()


@pytest.fixture
def sample_global_config(tmp_path: Path) -> GlobalConfig:
    return GlobalConfig.model_validate(
        {
            "outputs_dir": str(tmp_path / "outputs"),
            "enable_progress_bar": False,
            "poll_interval_seconds": 0.01,
            "storage": {"backend": "memory"},
            "throttle": {"requests_per_minute": 50, "backoff_base_seconds": 0.01, "backoff_max_seconds": 0.05},
        }
    )


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("TSDR_HARVESTER_HOME", str(tmp_path))
    monkeypatch.delenv("USPTO_API_KEY", raising=False)
    locator = ConfigLocator(project_root=tmp_path)
    repository = ConfigRepository(locator)
    yield repository
