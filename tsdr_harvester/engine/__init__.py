"""Engine components: fetch -> extract -> commit, plus throttling and export."""

from .dispatcher import Dispatcher, DispatcherSettings, JobEventHooks
from .extractor import RecordExtractor, normalize_date
from .fetcher import FetchResponse, HealthStatus, TsdrFetcher, is_valid_serial_number
from .rate_limiter import RateLimiter
from .worker_pool import WorkerPool

__all__ = [
    "Dispatcher",
    "DispatcherSettings",
    "FetchResponse",
    "HealthStatus",
    "JobEventHooks",
    "RateLimiter",
    "RecordExtractor",
    "TsdrFetcher",
    "WorkerPool",
    "is_valid_serial_number",
    "normalize_date",
]
