"""HTTP access to the TSDR case-status API with error classification."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Dict

import httpx
import structlog

from ..config import ApiConfig
from ..errors import (
    FetchErrorKind,
    RecordNotFoundError,
    SourceAuthError,
    TransientFetchError,
)

HEALTH_CHECK_SERIAL = "88000001"
_SERIAL_NUMBER = re.compile(r"^\d{6,10}$")


def is_valid_serial_number(identifier: str) -> bool:
    """Serial numbers are usually 8 digits; 6-10 are accepted."""

    return bool(_SERIAL_NUMBER.match(identifier.strip()))


def case_status_path(identifier: str) -> str:
    return f"/casestatus/sn{identifier.strip()}/info.xml"


@dataclass(slots=True)
class FetchResponse:
    """Standardised response wrapper."""

    identifier: str
    url: str
    status_code: int
    text: str
    content: bytes = field(repr=False)
    elapsed_ms: float
    headers: Dict[str, str] = field(default_factory=dict, repr=False)


@dataclass(slots=True)
class HealthStatus:
    status: str
    message: str

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class TsdrFetcher:
    """One GET per identifier over a shared ``httpx.Client``.

    Raises ``TransientFetchError`` for timeouts, connection problems, 429 and
    5xx answers; ``SourceAuthError`` for 401/403; ``RecordNotFoundError`` for
    any other 4xx, including identifiers that are not serial numbers at all.
    """

    def __init__(
        self,
        api_config: ApiConfig,
        logger: structlog.BoundLogger | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_config = api_config
        self.logger = logger or structlog.get_logger("tsdr_harvester.fetcher")
        self._client = httpx.Client(
            base_url=api_config.base_url,
            timeout=api_config.request_timeout,
            follow_redirects=True,
            headers={
                "USPTO-API-KEY": api_config.effective_api_key(),
                "Accept": "application/xml",
                "User-Agent": api_config.user_agent,
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def fetch(self, identifier: str) -> FetchResponse:
        if not is_valid_serial_number(identifier):
            raise RecordNotFoundError(
                identifier,
                FetchErrorKind.HTTP_ERROR,
                f"Not a valid serial number: {identifier!r}",
            )
        path = case_status_path(identifier)
        started = time.perf_counter()
        try:
            response = self._client.get(path)
        except httpx.TimeoutException as exc:
            self.logger.warning("fetch_timeout", identifier=identifier, error=str(exc))
            raise TransientFetchError(
                identifier, FetchErrorKind.TIMEOUT, "Request timeout"
            ) from exc
        except httpx.TransportError as exc:
            self.logger.warning("fetch_network_error", identifier=identifier, error=str(exc))
            raise TransientFetchError(
                identifier, FetchErrorKind.NETWORK_ERROR, f"Network error: {exc}"
            ) from exc
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._raise_for_status(identifier, response)
        self.logger.debug(
            "fetch_ok",
            identifier=identifier,
            status=response.status_code,
            elapsed_ms=round(elapsed_ms, 1),
        )
        return FetchResponse(
            identifier=identifier,
            url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            content=response.content,
            elapsed_ms=elapsed_ms,
            headers=dict(response.headers),
        )

    def health_check(self) -> HealthStatus:
        """Fetch a known serial; a 404 still proves the API is reachable."""

        try:
            self.fetch(HEALTH_CHECK_SERIAL)
        except RecordNotFoundError:
            return HealthStatus("ok", "USPTO API is accessible")
        except SourceAuthError:
            return HealthStatus("error", "API authentication failed - check API key")
        except TransientFetchError as exc:
            return HealthStatus("error", f"USPTO API error: {exc}")
        return HealthStatus("ok", "USPTO API is accessible")

    # ------------------------------------------------------------------
    def _raise_for_status(self, identifier: str, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        reason = response.reason_phrase or ""
        if status in {401, 403}:
            self.logger.error("fetch_auth_failed", identifier=identifier, status=status)
            raise SourceAuthError(
                identifier,
                FetchErrorKind.HTTP_ERROR,
                "API authentication failed",
                status_code=status,
            )
        if status == 429 or status >= 500:
            self.logger.warning("fetch_retryable_status", identifier=identifier, status=status)
            message = (
                "Rate limit exceeded"
                if status == 429
                else f"USPTO server error ({status})"
            )
            raise TransientFetchError(
                identifier, FetchErrorKind.HTTP_ERROR, message, status_code=status
            )
        self.logger.debug("fetch_not_found", identifier=identifier, status=status)
        raise RecordNotFoundError(
            identifier,
            FetchErrorKind.HTTP_ERROR,
            f"API error: {status} {reason}".strip(),
            status_code=status,
        )


__all__ = [
    "FetchResponse",
    "HEALTH_CHECK_SERIAL",
    "HealthStatus",
    "TsdrFetcher",
    "case_status_path",
    "is_valid_serial_number",
]
