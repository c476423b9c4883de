"""Encryption sweep for blobs stored before encryption was enabled.

Walks blob records whose `encrypted` flag is false, in batches, and rewrites
each legacy (plaintext) object in place as an encrypted envelope:

1. Read the raw bytes from the wrapped backend, bypassing decryption
2. Skip objects that already carry the envelope magic
3. Upload the raw bytes through the encrypting service, same key
4. Set the record's encrypted flag

A failure on one object is logged, recorded and counted; the sweep moves on.
Re-running is safe: converted objects are detected by their magic prefix and
never encrypted twice. Running several sweeps at once is safe for the same
reason, though it wastes work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from signsuite.services.envelope import is_encrypted

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator

    from signsuite.services.encrypted_storage import EncryptedStorageService

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class BlobRecord(Protocol):
    """Fields the sweep needs from a blob record."""

    blob_id: uuid.UUID
    key: str


class BlobRecordSource(Protocol):
    """Persistence operations the sweep relies on."""

    def iter_unencrypted(self, batch_size: int) -> AsyncIterator[list[Any]]: ...

    async def mark_encrypted(self, blob: Any) -> None: ...

    async def checkpoint(self) -> None: ...


class MigrationItemError(Exception):
    """A single blob failed to convert.

    Attributes:
        blob_id: Record identifier.
        key: Backend object key.
    """

    def __init__(self, message: str, *, blob_id: Any, key: str) -> None:
        self.blob_id = blob_id
        self.key = key
        super().__init__(message)


@dataclass
class SweepResult:
    """Outcome of one sweep.

    Attributes:
        converted: Objects encrypted in this run.
        skipped: Objects that were already encrypted.
        failed: Objects that raised an error.
        errors: One MigrationItemError per failure.
        dry_run: Whether writes were suppressed.
    """

    converted: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[MigrationItemError] = field(default_factory=list)
    dry_run: bool = False

    @property
    def processed(self) -> int:
        """Total records looked at."""
        return self.converted + self.skipped + self.failed

    def to_dict(self) -> dict[str, Any]:
        """Summary suitable for logs and job results."""
        return {
            "processed": self.processed,
            "converted": self.converted,
            "skipped": self.skipped,
            "failed": self.failed,
            "dry_run": self.dry_run,
            "errors": [{"blob_id": str(e.blob_id), "key": e.key, "error": str(e)} for e in self.errors],
        }


class BlobEncryptionSweeper:
    """Re-encrypts legacy plaintext blobs in place."""

    def __init__(self, storage: EncryptedStorageService, records: BlobRecordSource) -> None:
        """Initialize the sweeper.

        Args:
            storage: Encrypting storage service; its backend provides raw reads.
            records: Source of blob records and their encrypted flags.
        """
        self._storage = storage
        self._records = records

    async def run(
        self,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
    ) -> SweepResult:
        """Sweep all blobs not yet flagged as encrypted.

        Args:
            batch_size: Records loaded per batch.
            dry_run: Report what would be converted without writing.

        Returns:
            SweepResult with counts and per-item errors.
        """
        if batch_size < 1:
            msg = f"batch_size must be positive, got {batch_size}"
            raise ValueError(msg)

        result = SweepResult(dry_run=dry_run)

        async for batch in self._records.iter_unencrypted(batch_size):
            for blob in batch:
                try:
                    converted = await self._encrypt_blob(blob, dry_run=dry_run)
                except Exception as e:
                    error = MigrationItemError(
                        f"{type(e).__name__}: {e}",
                        blob_id=blob.blob_id,
                        key=blob.key,
                    )
                    result.failed += 1
                    result.errors.append(error)
                    logger.error("Failed to encrypt blob %s (%s): %s", blob.blob_id, blob.key, error)
                    continue

                if converted:
                    result.converted += 1
                    logger.info("Encrypted blob %s (%s)", blob.blob_id, blob.key)
                else:
                    result.skipped += 1
                    logger.debug("Blob %s already encrypted, flag updated", blob.blob_id)

            if not dry_run:
                await self._records.checkpoint()

        logger.info(
            "Blob encryption sweep complete: %d encrypted, %d already encrypted, "
            "%d errors%s",
            result.converted,
            result.skipped,
            result.failed,
            " (dry run)" if dry_run else "",
        )
        return result

    async def _encrypt_blob(self, blob: BlobRecord, *, dry_run: bool) -> bool:
        """Convert one blob; returns False when it was already encrypted."""
        raw = self._storage.backend.get(blob.key)

        if is_encrypted(raw):
            if not dry_run:
                await self._records.mark_encrypted(blob)
            return False

        if not dry_run:
            self._storage.upload(blob.key, raw)
            await self._records.mark_encrypted(blob)
        return True
