"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    ApiConfig,
    ExportFormat,
    GlobalConfig,
    StorageBackend,
    StorageConfig,
    ThrottleConfig,
)

__all__ = [
    "ApiConfig",
    "ConfigLocator",
    "ConfigRepository",
    "ExportFormat",
    "GlobalConfig",
    "StorageBackend",
    "StorageConfig",
    "ThrottleConfig",
]
