"""Error taxonomy shared by the retrieval pipeline."""

from __future__ import annotations

from enum import Enum


class HarvesterError(Exception):
    """Base class for every error raised by tsdr_harvester."""


class InvalidSubmissionError(HarvesterError):
    """Empty or malformed identifier list, rejected before a job exists."""


class JobNotFoundError(HarvesterError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(HarvesterError):
    """Operation is not allowed for the job's current status."""


class FatalStoreError(HarvesterError):
    """The job store cannot persist or read results; aborts the affected job."""


class ParseError(HarvesterError):
    """Malformed external document. Never escapes the record extractor."""


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"


class FetchError(HarvesterError):
    """Failure talking to the external source for one identifier."""

    def __init__(
        self,
        identifier: str,
        kind: FetchErrorKind,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.identifier = identifier
        self.kind = kind
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Timeout, connection reset, throttling or 5xx: worth retrying."""


class RecordNotFoundError(FetchError):
    """4xx answer for the identifier itself: the source has no such record."""


class SourceAuthError(FetchError):
    """The source rejected our credentials; no identifier can succeed."""


__all__ = [
    "FatalStoreError",
    "FetchError",
    "FetchErrorKind",
    "HarvesterError",
    "InvalidJobStateError",
    "InvalidSubmissionError",
    "JobNotFoundError",
    "ParseError",
    "RecordNotFoundError",
    "SourceAuthError",
    "TransientFetchError",
]
