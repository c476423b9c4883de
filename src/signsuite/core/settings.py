"""Singleton settings accessor for SignSuite configuration.

Usage:
    from signsuite.core.settings import get_settings

    settings = get_settings()

The settings are loaded once and cached. To reload settings (e.g., in tests),
use clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from signsuite.core.config import (
    ConfigurationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached application settings.

    Settings are loaded from environment variables on first call and
    cached for subsequent calls.

    Returns:
        Validated Settings instance.

    Raises:
        SystemExit: If settings cannot be loaded or fail validation
            (fail-fast behavior).
    """
    try:
        logger.info("Loading application settings from environment")
        settings = Settings()
        validate_settings(settings)
        return settings

    except ValidationError as e:
        error_messages = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            error_messages.append(f"  - {loc}: {error['msg']}")

        logger.critical(
            "Configuration validation failed:\n%s",
            "\n".join(error_messages),
        )
        raise SystemExit(1) from e

    except ConfigurationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Use this function in tests to reset settings between test cases,
    or when configuration needs to be reloaded.
    """
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")


def get_settings_safe() -> Settings | None:
    """Get settings without raising exceptions.

    Returns:
        Settings instance if available, None otherwise.
    """
    try:
        return get_settings()
    except SystemExit:
        return None
