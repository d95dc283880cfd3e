"""Pydantic models describing the harvester configuration file."""

from __future__ import annotations

import math
import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

API_KEY_ENV = "USPTO_API_KEY"
DEFAULT_BASE_URL = "https://tsdrapi.uspto.gov/ts/cd"
DEFAULT_USER_AGENT = "USPTO-TSDR-Client/1.0"


class StorageBackend(str, Enum):
    """Where jobs and results are kept."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    XLSX = "xlsx"


class ApiConfig(BaseModel):
    """Connection settings for the TSDR case-status API."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = Field(default=30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return value

    def effective_api_key(self) -> str:
        """API key from the environment when set, else the configured one."""

        return os.environ.get(API_KEY_ENV) or self.api_key


class ThrottleConfig(BaseModel):
    """Rate and retry parameters for the dispatcher."""

    requests_per_minute: int = Field(default=50, ge=1, le=120)
    worker_concurrency: int | None = Field(default=None, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=2.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)

    @model_validator(mode="after")
    def _derive_concurrency(self) -> "ThrottleConfig":
        if self.worker_concurrency is None:
            self.worker_concurrency = max(1, math.ceil(self.requests_per_minute / 10))
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self

    @property
    def delay_between_requests_ms(self) -> int:
        return math.ceil(60000 / self.requests_per_minute)


class StorageConfig(BaseModel):
    backend: StorageBackend = StorageBackend.SQLITE
    path: Path = Field(default=Path("data/jobs.db"))
    job_retention_hours: float = Field(default=24.0, gt=0)
    cleanup_interval_minutes: float = Field(default=60.0, gt=0)

    @field_validator("path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_path(self, base_dir: Path) -> Path:
        """Return the database path relative to the project root."""

        if not self.path.is_absolute():
            return (base_dir / self.path).resolve()
        return self.path


class GlobalConfig(BaseModel):
    """Top-level settings shared by the CLI, service and dispatcher."""

    api: ApiConfig = Field(default_factory=ApiConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    outputs_dir: Path = Field(default=Path("data/outputs"))
    enable_progress_bar: bool = True
    poll_interval_seconds: float = Field(default=1.0, gt=0)

    @field_validator("outputs_dir", mode="before")
    @classmethod
    def _coerce_dirs(cls, value: Any) -> Path:
        return Path(value)


__all__ = [
    "API_KEY_ENV",
    "ApiConfig",
    "ExportFormat",
    "GlobalConfig",
    "StorageBackend",
    "StorageConfig",
    "ThrottleConfig",
]
