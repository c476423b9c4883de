"""SignSuite core module.

Shared components used across all services:
- Configuration management
- Cached settings accessor
"""

from signsuite.core.config import (
    ConfigurationError,
    DatabaseSettings,
    Environment,
    S3Settings,
    Settings,
    StorageBackendKind,
    StorageSettings,
)
from signsuite.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigurationError",
    "DatabaseSettings",
    "Environment",
    "S3Settings",
    "Settings",
    "StorageBackendKind",
    "StorageSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
