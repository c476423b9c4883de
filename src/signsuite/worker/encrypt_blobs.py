"""Command that encrypts blobs stored before encryption was enabled.

Safe to run any number of times; already encrypted blobs are skipped.

    signsuite-encrypt-blobs --batch-size 200
    signsuite-encrypt-blobs --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TYPE_CHECKING, NoReturn

from signsuite.core.settings import get_settings
from signsuite.db import close_engine, get_async_session
from signsuite.services.blob_records import SqlBlobRecordRepository
from signsuite.services.encrypted_storage import EncryptedStorageService, build_storage_service
from signsuite.services.migration import BlobEncryptionSweeper, SweepResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from signsuite.core.config import Settings

logger = logging.getLogger(__name__)


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="signsuite-encrypt-blobs",
        description="Encrypt blobs stored before encryption at rest was enabled",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.storage.migration_batch_size,
        help="Blob records loaded per batch (default: %(default)s)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be encrypted without writing anything",
    )
    return parser


async def encrypt_existing_blobs(
    settings: Settings,
    *,
    batch_size: int,
    dry_run: bool = False,
) -> SweepResult | None:
    """Run one encryption sweep against the configured storage.

    Returns:
        The sweep result, or None if storage encryption is not enabled.
    """
    storage = build_storage_service(settings)
    if not isinstance(storage, EncryptedStorageService):
        logger.info("Storage encryption is not enabled; nothing to do")
        return None

    try:
        async with get_async_session(settings.database) as session:
            sweeper = BlobEncryptionSweeper(storage, SqlBlobRecordRepository(session))
            return await sweeper.run(batch_size=batch_size, dry_run=dry_run)
    finally:
        await close_engine()


def run(argv: Sequence[str] | None = None) -> NoReturn:
    """Entry point for the signsuite-encrypt-blobs console script."""
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args = _build_parser(settings).parse_args(argv)

    try:
        result = asyncio.run(
            encrypt_existing_blobs(settings, batch_size=args.batch_size, dry_run=args.dry_run)
        )
    except Exception as e:
        logger.exception("Blob encryption sweep failed: %s", e)
        sys.exit(1)

    if result is not None:
        logger.info("Sweep summary: %s", result.to_dict())
        if result.failed:
            sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    run()
