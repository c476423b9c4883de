"""Blob download router.

GET /blobs/{key} returns the decrypted object. A single `Range: bytes=...`
header is honoured with a 206 response; the whole object is decrypted
first either way, since GCM authenticates the object as a unit.
"""

from __future__ import annotations

import logging
import re
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response, status

from signsuite.services.encrypted_storage import EncryptedStorageService
from signsuite.services.envelope import DecryptionFailedError
from signsuite.services.storage import (
    DEFAULT_CONTENT_TYPE,
    ObjectNotFoundError,
    content_disposition,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/blobs", tags=["blobs"])

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def parse_range(header: str, size: int) -> range | None:
    """Parse a single-range `Range` header against an object size.

    Returns:
        The requested byte range (exclusive stop), or None when the header
        is not a single byte range and should be ignored.

    Raises:
        HTTPException: 416 if the range cannot be satisfied.
    """
    match = _RANGE_RE.match(header.strip())
    if not match or match.groups() == ("", ""):
        return None

    first, last = match.groups()
    if first:
        start = int(first)
        stop = min(int(last) + 1, size) if last else size
        if last and int(last) < start:
            return None
    else:
        # Suffix range: the last N bytes
        start = max(size - int(last), 0)
        stop = size

    if start >= size or start >= stop:
        raise HTTPException(
            status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            detail="Requested range not satisfiable",
            headers={"Content-Range": f"bytes */{size}"},
        )
    return range(start, stop)


def _read(storage, key: str, byte_range: range | None = None) -> bytes:
    if isinstance(storage, EncryptedStorageService):
        if byte_range is None:
            return storage.download(key)
        return storage.download_range(key, byte_range)
    if byte_range is None:
        return storage.get(key)
    return storage.get_range(key, byte_range)


@router.get("/{key:path}")
def get_blob(
    key: str,
    request: Request,
    range_header: Annotated[str | None, Header(alias="Range")] = None,
    disposition: Annotated[str, Query(pattern="^(inline|attachment)$")] = "inline",
    filename: Annotated[str | None, Query(max_length=255)] = None,
    content_type: Annotated[str, Query(max_length=255)] = DEFAULT_CONTENT_TYPE,
) -> Response:
    """Serve a decrypted blob."""
    storage = request.app.state.storage
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Disposition": content_disposition(disposition, filename),
    }

    byte_range = None
    try:
        if range_header:
            size = storage.size(key)
            byte_range = parse_range(range_header, size)
        data = _read(storage, key, byte_range)
    except (ObjectNotFoundError, DecryptionFailedError) as e:
        logger.warning("Blob %s unavailable: %s", key, type(e).__name__)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Blob not found") from e

    if byte_range is None:
        return Response(content=data, media_type=content_type, headers=headers)

    headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.stop - 1}/{size}"
    return Response(
        content=data,
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=content_type,
        headers=headers,
    )
