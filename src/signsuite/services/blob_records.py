"""Blob metadata repository used by the encryption sweep."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from signsuite.db.models.blobs import StoredBlob

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SqlBlobRecordRepository:
    """Access to StoredBlob rows through an async SQLAlchemy session.

    Batches are fetched with keyset pagination on blob_id, so rows that
    stay unencrypted after a failure are not selected again in the same
    pass.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with a database session.

        Args:
            session: Async SQLAlchemy session.
        """
        self._session = session

    async def iter_unencrypted(self, batch_size: int) -> AsyncIterator[list[StoredBlob]]:
        """Yield batches of blobs whose encrypted flag is false.

        Args:
            batch_size: Maximum rows per batch.
        """
        last_id = None
        while True:
            query = select(StoredBlob).where(StoredBlob.encrypted.is_(False))
            if last_id is not None:
                query = query.where(StoredBlob.blob_id > last_id)
            query = query.order_by(StoredBlob.blob_id).limit(batch_size)

            result = await self._session.execute(query)
            batch = list(result.scalars().all())
            if not batch:
                return

            yield batch

            if len(batch) < batch_size:
                return
            last_id = batch[-1].blob_id

    async def mark_encrypted(self, blob: StoredBlob) -> None:
        """Set the encrypted flag on a blob record.

        The update runs in a savepoint; if the flush fails only this row's
        change is rolled back and the session stays usable for the rest of
        the batch.
        """
        async with self._session.begin_nested():
            blob.encrypted = True
            await self._session.flush()

    async def checkpoint(self) -> None:
        """Commit the work done so far."""
        await self._session.commit()
