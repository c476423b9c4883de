"""Blob storage backends.

This module defines the capability set every storage backend offers
(StorageBackend) and two implementations:
- S3Backend: S3-compatible object storage via boto3 (AWS, MinIO)
- DiskBackend: local filesystem, for development and single-node installs

Backends move opaque bytes only. Encryption at rest is applied on top of
them by signsuite.services.encrypted_storage.EncryptedStorageService, so a
backend never sees plaintext when encryption is enabled.

Example:
    from signsuite.services.storage import S3Backend, compute_checksum
    from signsuite.core.settings import get_settings

    backend = S3Backend.from_settings(get_settings().s3)
    backend.put("abc123", data, checksum=compute_checksum(data))
    data = backend.get("abc123")
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import tempfile
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable
from urllib.parse import quote, urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from signsuite.core.config import StorageBackendKind

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

    from signsuite.core.config import S3Settings, Settings

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
# Chunk size used for chunked reads (matches multipart part size)
DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


def compute_checksum(data: bytes) -> str:
    """Compute the base64 MD5 digest of data.

    This is the value S3 verifies as Content-MD5, and the value recorded
    as the blob checksum.
    """
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")  # noqa: S324


def content_disposition(disposition: str | None, filename: str | None) -> str | None:
    """Build a Content-Disposition value, or None when neither part is given.

    The quoted filename parameter is an ASCII rendition of the name; the
    exact name travels percent-encoded in filename* (RFC 6266), so the
    header stays Latin-1 safe for any filename.
    """
    if not disposition and not filename:
        return None
    header = disposition or "inline"
    if filename:
        fallback = filename.encode("ascii", "replace").decode("ascii")
        fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
        header += f"; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
    return header


class StorageError(Exception):
    """Base exception for storage backend operations.

    Attributes:
        message: Human-readable error description.
        key: The object key involved (if applicable).
        operation: The operation that failed.
        bucket: The bucket involved (S3 only).
    """

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        operation: str | None = None,
        bucket: str | None = None,
    ) -> None:
        """Initialize storage error with context.

        Args:
            message: Error description.
            key: Object key (if applicable).
            operation: Operation name (e.g., 'put', 'get').
            bucket: Bucket name (if applicable).
        """
        self.message = message
        self.key = key
        self.operation = operation
        self.bucket = bucket
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class BucketNotFoundError(StorageError):
    """Raised when a bucket does not exist."""


class IntegrityError(StorageError):
    """Raised when the stored bytes do not match the supplied checksum."""


@runtime_checkable
class StorageBackend(Protocol):
    """Capabilities a blob storage backend must provide.

    Keys are opaque strings; values are raw bytes. byte_range arguments are
    Python range objects with an exclusive stop.
    """

    def put(
        self,
        key: str,
        data: bytes,
        *,
        checksum: str | None = None,
        content_type: str | None = None,
    ) -> None:
        """Store data under key, verifying checksum when given."""
        ...

    def get(self, key: str) -> bytes:
        """Return the full object."""
        ...

    def get_range(self, key: str, byte_range: range) -> bytes:
        """Return a slice of the object."""
        ...

    def iter_chunks(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the object in chunks."""
        ...

    def delete(self, key: str) -> None:
        """Delete an object; deleting a missing object is not an error."""
        ...

    def delete_prefixed(self, prefix: str) -> None:
        """Delete every object whose key starts with prefix."""
        ...

    def exists(self, key: str) -> bool:
        """Check whether an object exists."""
        ...

    def size(self, key: str) -> int:
        """Return the stored size of an object in bytes."""
        ...

    def url(
        self,
        key: str,
        *,
        expires_in: int,
        disposition: str | None = None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Generate a download URL for the stored bytes."""
        ...

    def direct_upload_url(
        self,
        key: str,
        *,
        expires_in: int,
        content_type: str,
        content_length: int,
        checksum: str,
    ) -> str:
        """Generate a URL a client can upload to directly."""
        ...

    def direct_upload_headers(
        self,
        key: str,
        *,
        content_type: str,
        checksum: str,
    ) -> dict[str, str]:
        """Headers the client must send with a direct upload."""
        ...

    def compose(self, source_keys: Iterable[str], destination_key: str) -> None:
        """Concatenate source objects into destination_key."""
        ...


class S3Backend:
    """S3-compatible object storage backend.

    This backend wraps boto3 to provide:
    - Content-MD5 verification on upload (checksum)
    - Ranged and chunked downloads
    - Presigned URL generation for direct access and direct upload

    The backend uses synchronous boto3 under the hood.
    """

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the S3 backend.

        Args:
            bucket: Bucket holding the objects.
            endpoint_url: S3-compatible endpoint URL (None for AWS).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            region: AWS region (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self._bucket = bucket
        self._region = region

        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )

        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )

        logger.debug(
            "Initialized S3Backend for bucket=%s endpoint=%s region=%s",
            bucket,
            endpoint_url,
            region,
        )

    @classmethod
    def from_settings(cls, settings: S3Settings) -> S3Backend:
        """Create backend from S3Settings configuration."""
        return cls(
            settings.bucket,
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    @property
    def bucket(self) -> str:
        """Bucket name."""
        return self._bucket

    def _error(self, e: ClientError, operation: str, key: str | None = None) -> StorageError:
        """Translate a botocore ClientError into a StorageError."""
        error_code = e.response.get("Error", {}).get("Code", "")
        if error_code in ("NoSuchKey", "404", "NotFound"):
            return ObjectNotFoundError(
                f"Object does not exist: {self._bucket}/{key}",
                bucket=self._bucket,
                key=key,
                operation=operation,
            )
        if error_code == "NoSuchBucket":
            return BucketNotFoundError(
                f"Bucket does not exist: {self._bucket}",
                bucket=self._bucket,
                key=key,
                operation=operation,
            )
        if error_code in ("BadDigest", "InvalidDigest"):
            return IntegrityError(
                f"Checksum mismatch for {self._bucket}/{key}",
                bucket=self._bucket,
                key=key,
                operation=operation,
            )
        return StorageError(
            f"{operation} failed: {e}",
            bucket=self._bucket,
            key=key,
            operation=operation,
        )

    def ensure_bucket(self) -> bool:
        """Ensure the bucket exists, creating it if necessary.

        Returns:
            True if bucket was created, False if it already existed.

        Raises:
            StorageError: If bucket creation fails.
        """
        try:
            self._client.head_bucket(Bucket=self._bucket)
            logger.debug("Bucket %s already exists", self._bucket)
            return False
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code != "404":
                raise self._error(e, "head_bucket") from e

        try:
            # For us-east-1, don't specify LocationConstraint
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=self._bucket)
            else:
                self._client.create_bucket(
                    Bucket=self._bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            raise self._error(e, "create_bucket") from e

        logger.info("Created bucket: %s", self._bucket)
        return True

    def put(
        self,
        key: str,
        data: bytes,
        *,
        checksum: str | None = None,
        content_type: str | None = None,
    ) -> None:
        """Upload an object.

        Args:
            key: Object key.
            data: Bytes to store.
            checksum: Base64 MD5 digest, sent as Content-MD5 so S3 rejects
                corrupted uploads.
            content_type: MIME type stored with the object.

        Raises:
            IntegrityError: If S3 rejects the checksum.
            StorageError: If upload fails.
        """
        params = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type or DEFAULT_CONTENT_TYPE,
        }
        if checksum:
            params["ContentMD5"] = checksum

        try:
            self._client.put_object(**params)
        except ClientError as e:
            raise self._error(e, "put", key) from e

        logger.debug("Uploaded %s/%s (%d bytes)", self._bucket, key, len(data))

    def get(self, key: str) -> bytes:
        """Download a whole object.

        Raises:
            ObjectNotFoundError: If object does not exist.
            StorageError: If download fails.
        """
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            raise self._error(e, "get", key) from e

        logger.debug("Downloaded %s/%s (%d bytes)", self._bucket, key, len(data))
        return data

    def get_range(self, key: str, byte_range: range) -> bytes:
        """Download bytes [start, stop) of an object."""
        if len(byte_range) == 0:
            return b""

        try:
            response = self._client.get_object(
                Bucket=self._bucket,
                Key=key,
                Range=f"bytes={byte_range.start}-{byte_range.stop - 1}",
            )
            return response["Body"].read()
        except ClientError as e:
            raise self._error(e, "get_range", key) from e

    def iter_chunks(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Stream an object in chunks of at most chunk_size bytes."""
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            raise self._error(e, "iter_chunks", key) from e

        yield from response["Body"].iter_chunks(chunk_size)

    def delete(self, key: str) -> None:
        """Delete an object.

        S3 delete is idempotent; deleting a non-existent object succeeds.
        """
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            raise self._error(e, "delete", key) from e

        logger.debug("Deleted %s/%s", self._bucket, key)

    def delete_prefixed(self, prefix: str) -> None:
        """Delete all objects under a key prefix."""
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if objects:
                    self._client.delete_objects(
                        Bucket=self._bucket,
                        Delete={"Objects": objects, "Quiet": True},
                    )
        except ClientError as e:
            raise self._error(e, "delete_prefixed", prefix) from e

        logger.debug("Deleted objects under %s/%s", self._bucket, prefix)

    def exists(self, key: str) -> bool:
        """Check if an object exists.

        Raises:
            StorageError: If check fails for reasons other than not found.
        """
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            error = self._error(e, "exists", key)
            if isinstance(error, ObjectNotFoundError):
                return False
            raise error from e

    def size(self, key: str) -> int:
        """Return the object's ContentLength without downloading it."""
        try:
            response = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            raise self._error(e, "size", key) from e
        return response["ContentLength"]

    def url(
        self,
        key: str,
        *,
        expires_in: int,
        disposition: str | None = None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Generate a presigned GET URL."""
        params = {"Bucket": self._bucket, "Key": key}
        header = content_disposition(disposition, filename)
        if header:
            params["ResponseContentDisposition"] = header
        if content_type:
            params["ResponseContentType"] = content_type

        try:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params=params,
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise self._error(e, "url", key) from e

    def direct_upload_url(
        self,
        key: str,
        *,
        expires_in: int,
        content_type: str,
        content_length: int,
        checksum: str,
    ) -> str:
        """Generate a presigned PUT URL for a direct client upload."""
        try:
            return self._client.generate_presigned_url(
                ClientMethod="put_object",
                Params={
                    "Bucket": self._bucket,
                    "Key": key,
                    "ContentType": content_type,
                    "ContentLength": content_length,
                    "ContentMD5": checksum,
                },
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise self._error(e, "direct_upload_url", key) from e

    def direct_upload_headers(
        self,
        key: str,
        *,
        content_type: str,
        checksum: str,
    ) -> dict[str, str]:
        """Headers matching the presigned PUT URL signature."""
        return {"Content-Type": content_type, "Content-MD5": checksum}

    def compose(self, source_keys: Iterable[str], destination_key: str) -> None:
        """Concatenate source objects into a new object."""
        data = b"".join(self.get(key) for key in source_keys)
        self.put(destination_key, data, checksum=compute_checksum(data))

        logger.debug("Composed %s/%s (%d bytes)", self._bucket, destination_key, len(data))


class DiskBackend:
    """Local filesystem backend.

    Objects live under root/<h[0:2]>/<h[2:4]>/<key>, h being the MD5 hex
    digest of the key. Writes go to a
    temporary file in the target directory and are moved into place with
    os.replace, so readers never observe a partially written object.
    """

    def __init__(self, root: str | Path, *, base_url: str = "http://localhost:8000/disk") -> None:
        """Initialize the disk backend.

        Args:
            root: Directory holding the objects (created if missing).
            base_url: URL prefix the application serves objects from.
        """
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")

    @property
    def root(self) -> Path:
        """Storage root directory."""
        return self._root

    def path_for(self, key: str) -> Path:
        """Filesystem path of an object.

        Raises:
            StorageError: If the key would escape the storage root.
        """
        parts = key.split("/")
        if not key or any(part in ("", ".", "..") for part in parts):
            raise StorageError(f"Invalid object key: {key!r}", key=key, operation="path_for")
        shard = hashlib.md5(key.encode("utf-8")).hexdigest()  # noqa: S324
        return self._root.joinpath(shard[0:2], shard[2:4], *parts)

    def _key_for(self, path: Path) -> str:
        return "/".join(path.relative_to(self._root).parts[2:])

    def put(
        self,
        key: str,
        data: bytes,
        *,
        checksum: str | None = None,
        content_type: str | None = None,
    ) -> None:
        """Write an object atomically.

        Raises:
            IntegrityError: If data does not match checksum.
        """
        if checksum is not None and compute_checksum(data) != checksum:
            raise IntegrityError(
                f"Checksum mismatch for {key}",
                key=key,
                operation="put",
            )

        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Write failed: {e}", key=key, operation="put") from e

        logger.debug("Wrote %s (%d bytes)", key, len(data))

    def get(self, key: str) -> bytes:
        """Read a whole object.

        Raises:
            ObjectNotFoundError: If object does not exist.
        """
        try:
            return self.path_for(key).read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(f"Object does not exist: {key}", key=key, operation="get") from e
        except OSError as e:
            raise StorageError(f"Read failed: {e}", key=key, operation="get") from e

    def get_range(self, key: str, byte_range: range) -> bytes:
        """Read bytes [start, stop) of an object."""
        try:
            with self.path_for(key).open("rb") as handle:
                handle.seek(byte_range.start)
                return handle.read(max(len(byte_range), 0))
        except FileNotFoundError as e:
            raise ObjectNotFoundError(
                f"Object does not exist: {key}", key=key, operation="get_range"
            ) from e

    def iter_chunks(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Read an object in chunks of at most chunk_size bytes."""
        try:
            handle = self.path_for(key).open("rb")
        except FileNotFoundError as e:
            raise ObjectNotFoundError(
                f"Object does not exist: {key}", key=key, operation="iter_chunks"
            ) from e

        with handle:
            while chunk := handle.read(chunk_size):
                yield chunk

    def delete(self, key: str) -> None:
        """Delete an object if present."""
        self.path_for(key).unlink(missing_ok=True)
        logger.debug("Deleted %s", key)

    def delete_prefixed(self, prefix: str) -> None:
        """Delete every object whose key starts with prefix."""
        for path in list(self._root.rglob("*")):
            if path.is_file() and not path.name.startswith("."):
                if self._key_for(path).startswith(prefix):
                    path.unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        """Check if an object exists."""
        return self.path_for(key).is_file()

    def size(self, key: str) -> int:
        """Return the object's size on disk."""
        try:
            return self.path_for(key).stat().st_size
        except FileNotFoundError as e:
            raise ObjectNotFoundError(
                f"Object does not exist: {key}", key=key, operation="size"
            ) from e

    def _expiring_url(self, key: str, params: dict[str, str], expires_in: int) -> str:
        params = {**params, "expires": str(int(time.time()) + expires_in)}
        return f"{self._base_url}/{quote(key)}?{urlencode(params)}"

    def url(
        self,
        key: str,
        *,
        expires_in: int,
        disposition: str | None = None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """URL the application serves this object from."""
        params = {}
        header = content_disposition(disposition, filename)
        if header:
            params["disposition"] = header
        if content_type:
            params["content_type"] = content_type
        return self._expiring_url(key, params, expires_in)

    def direct_upload_url(
        self,
        key: str,
        *,
        expires_in: int,
        content_type: str,
        content_length: int,
        checksum: str,
    ) -> str:
        """URL of the application's direct upload endpoint for this key."""
        params = {
            "content_type": content_type,
            "content_length": str(content_length),
            "checksum": checksum,
        }
        return self._expiring_url(key, params, expires_in)

    def direct_upload_headers(
        self,
        key: str,
        *,
        content_type: str,
        checksum: str,
    ) -> dict[str, str]:
        """Headers the client must send with a direct upload."""
        return {"Content-Type": content_type}

    def compose(self, source_keys: Iterable[str], destination_key: str) -> None:
        """Concatenate source objects into a new object."""
        data = b"".join(self.get(key) for key in source_keys)
        self.put(destination_key, data)


def build_backend(settings: Settings) -> StorageBackend:
    """Create the configured storage backend."""
    if settings.storage.backend == StorageBackendKind.S3:
        return S3Backend.from_settings(settings.s3)
    return DiskBackend(settings.storage.disk_root, base_url=settings.storage.disk_base_url)
