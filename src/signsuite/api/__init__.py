"""Decrypting blob proxy.

Backend URLs point at stored bytes, which are ciphertext once encryption at
rest is enabled. Browser-facing links therefore go through this small
FastAPI application, which reads blobs through the encrypting storage
service and streams the plaintext back.

Authorization of who may read a blob is the surrounding application's job;
mount this app behind it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI

from signsuite.api.routers.blobs import router as blobs_router

if TYPE_CHECKING:
    from signsuite.core.config import Settings
    from signsuite.services.encrypted_storage import EncryptedStorageService
    from signsuite.services.storage import StorageBackend

logger = logging.getLogger(__name__)

API_TITLE = "SignSuite Blob Proxy"


def create_app(
    storage: EncryptedStorageService | StorageBackend | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the blob proxy application.

    Args:
        storage: Storage service to read from. Built from settings when
            omitted.
        settings: Settings used to build the storage service. Loaded from
            the environment when omitted.

    Returns:
        Configured FastAPI application.
    """
    if storage is None:
        from signsuite.core.settings import get_settings
        from signsuite.services.encrypted_storage import build_storage_service

        storage = build_storage_service(settings or get_settings())

    app = FastAPI(title=API_TITLE, version="0.1.0")
    app.state.storage = storage
    app.include_router(blobs_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Liveness check."""
        return {"status": "ok"}

    logger.info("Blob proxy created (storage=%s)", type(storage).__name__)
    return app
