"""Async database access for the blob metadata table.

The engine is created lazily from DatabaseSettings and shared by every
session opened in the process. Commands call close_engine() on exit.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from signsuite.core.config import DatabaseSettings

logger = logging.getLogger(__name__)

ASYNC_DRIVER_SCHEME = "postgresql+psycopg://"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def async_database_url(url: str) -> str:
    """Rewrite a plain PostgreSQL URL to use the async psycopg driver.

    URLs that already name a driver are returned unchanged.
    """
    for scheme in ("postgresql://", "postgres://"):
        if url.startswith(scheme):
            return ASYNC_DRIVER_SCHEME + url[len(scheme) :]
    return url


def _session_factory_for(settings: DatabaseSettings | None) -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory

    if _session_factory is not None:
        return _session_factory

    if settings is None:
        from signsuite.core.settings import get_settings

        settings = get_settings().database

    _engine = create_async_engine(
        async_database_url(settings.url),
        pool_size=settings.pool_size,
        echo=settings.echo,
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(bind=_engine, expire_on_commit=False)
    logger.debug("Database engine created (pool_size=%d)", settings.pool_size)
    return _session_factory


@asynccontextmanager
async def get_async_session(
    settings: DatabaseSettings | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session on the shared engine.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(query)
            await session.commit()

    Args:
        settings: Database settings used the first time the engine is
            created. Loaded from the environment when omitted.

    Yields:
        AsyncSession, rolled back if the block raises.
    """
    session = _session_factory_for(settings)()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Dispose of the shared engine, if one was created."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        logger.debug("Database engine disposed")
    _engine = None
    _session_factory = None
