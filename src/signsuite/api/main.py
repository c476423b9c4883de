"""Blob proxy entry point.

    uvicorn signsuite.api.main:create_default_app --factory
"""

import logging

from fastapi import FastAPI

from signsuite.api import create_app
from signsuite.core.settings import get_settings

logger = logging.getLogger(__name__)


def create_default_app() -> FastAPI:
    """Application factory using settings from the environment."""
    return create_app(settings=get_settings())


def run() -> None:
    """Run the blob proxy using uvicorn.

    Called by the signsuite-blob-proxy console script.
    """
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("Starting blob proxy on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "signsuite.api.main:create_default_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
