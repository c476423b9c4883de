"""Storage encryption key derivation.

Operator-supplied key material is turned into a 32-byte AES-256 key with
HKDF-SHA256. The salt and info strings are fixed: every envelope already
stored was sealed under a key derived with exactly these values, so
changing them makes existing objects unreadable.

Key material resolution (executed once, at service construction):
1. Dedicated storage secret (SIGNSUITE_STORAGE__ENCRYPTION_KEY)
2. Primary application encryption secret (SIGNSUITE_PRIMARY_ENCRYPTION_KEY)
3. Staging/production: ConfigurationError
4. Otherwise: a development-only marker value
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from signsuite.core.config import ConfigurationError

if TYPE_CHECKING:
    from signsuite.core.config import Settings

logger = logging.getLogger(__name__)

HKDF_SALT = b"signsuite-storage-encryption"
HKDF_INFO = b"active-storage-file-encryption"
DERIVED_KEY_SIZE_BYTES = 32

DEV_KEY_MATERIAL = b"dev-storage-key-do-not-use-in-production0"


def derive_key(key_material: bytes | str) -> bytes:
    """Derive the 32-byte storage encryption key from key material.

    Args:
        key_material: Secret from configuration. Strings are UTF-8 encoded.

    Returns:
        32-byte key suitable for AES-256-GCM.

    Raises:
        ValueError: If key material is empty.
    """
    if isinstance(key_material, str):
        key_material = key_material.encode("utf-8")
    if not key_material:
        msg = "Key material must not be empty"
        raise ValueError(msg)

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=DERIVED_KEY_SIZE_BYTES,
        salt=HKDF_SALT,
        info=HKDF_INFO,
    )
    return hkdf.derive(key_material)


def resolve_key_material(settings: Settings) -> bytes:
    """Pick the storage key material from configuration.

    Args:
        settings: Loaded application settings.

    Returns:
        Raw key material bytes (never logged).

    Raises:
        ConfigurationError: If no secret is configured in a
            production-like environment.
    """
    if settings.storage.encryption_key is not None:
        value = settings.storage.encryption_key.get_secret_value()
        if value:
            logger.debug("Using dedicated storage encryption key")
            return value.encode("utf-8")

    if settings.primary_encryption_key is not None:
        value = settings.primary_encryption_key.get_secret_value()
        if value:
            logger.info("No dedicated storage key set, using primary encryption key")
            return value.encode("utf-8")

    if settings.is_production_like:
        raise ConfigurationError(
            "SIGNSUITE_STORAGE__ENCRYPTION_KEY or SIGNSUITE_PRIMARY_ENCRYPTION_KEY "
            f"is required in {settings.environment.value}",
            field="storage.encryption_key",
        )

    logger.warning(
        "No storage encryption key configured; using the development default "
        "(environment=%s). Never use this outside development.",
        settings.environment.value,
    )
    return DEV_KEY_MATERIAL


def load_storage_key(settings: Settings) -> bytes:
    """Resolve key material from settings and derive the storage key."""
    return derive_key(resolve_key_material(settings))
