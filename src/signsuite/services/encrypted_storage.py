"""Encrypting storage service: AES-256-GCM at rest over any backend.

EncryptedStorageService wraps a StorageBackend and is called exactly like
one. Every upload is sealed into an envelope (see signsuite.services.envelope)
before it reaches the backend; every download is authenticated and
decrypted. Objects stored before encryption was enabled have no envelope
magic and are returned as-is.

GCM authenticates the object as a whole, so reads always buffer the full
object before decrypting, including chunked and ranged reads. Ranged reads
download and decrypt everything, then slice the plaintext; this is correct
but costs the whole object per request.

Example:
    from signsuite.services.encrypted_storage import EncryptedStorageService
    from signsuite.services.storage import DiskBackend

    storage = EncryptedStorageService(DiskBackend("/var/lib/signsuite"), key_material)
    checksum = storage.upload("abc123", b"hello world")
    assert storage.download("abc123") == b"hello world"
"""

from __future__ import annotations

import logging
from functools import cached_property
from typing import TYPE_CHECKING, BinaryIO

from signsuite.services import envelope
from signsuite.services.envelope import DecryptionFailedError
from signsuite.services.key_derivation import derive_key, resolve_key_material
from signsuite.services.storage import (
    DEFAULT_CHUNK_SIZE,
    build_backend,
    compute_checksum,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from signsuite.core.config import Settings
    from signsuite.services.storage import StorageBackend

logger = logging.getLogger(__name__)


class EncryptedStorageService:
    """Storage backend decorator applying encryption at rest.

    The storage key is derived from the key material on first use and
    cached for the lifetime of the instance. It is immutable, so concurrent
    readers need no locking.
    """

    def __init__(self, backend: StorageBackend, key_material: bytes | str) -> None:
        """Initialize the service.

        Args:
            backend: Storage backend holding the raw bytes.
            key_material: Secret the storage key is derived from.
        """
        self._backend = backend
        self._key_material = key_material

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: StorageBackend | None = None,
    ) -> EncryptedStorageService:
        """Create the service with key material resolved from settings.

        Raises:
            ConfigurationError: If no key material is configured in a
                production-like environment.
        """
        return cls(
            backend if backend is not None else build_backend(settings),
            resolve_key_material(settings),
        )

    @property
    def backend(self) -> StorageBackend:
        """The wrapped backend (raw, possibly encrypted bytes)."""
        return self._backend

    @cached_property
    def _key(self) -> bytes:
        key = derive_key(self._key_material)
        # Drop the material once the key exists
        self._key_material = b""
        return key

    def _decrypt(self, key: str, data: bytes) -> bytes:
        try:
            return envelope.decode(data, self._key)
        except DecryptionFailedError as e:
            logger.error("Decryption failed for object %s: %s", key, e)
            raise DecryptionFailedError(f"Failed to decrypt object {key}: {e}") from e

    def upload(
        self,
        key: str,
        content: bytes | bytearray | BinaryIO,
        *,
        content_type: str | None = None,
    ) -> str:
        """Encrypt and store an object.

        Args:
            key: Object key.
            content: Plaintext bytes or a readable binary file object. File
                objects are read to the end and rewound when seekable.
            content_type: MIME type passed to the backend.

        Returns:
            Checksum of the encrypted bytes as stored.
        """
        if isinstance(content, (bytes, bytearray, memoryview)):
            plaintext = bytes(content)
        else:
            plaintext = content.read()
            if content.seekable():
                content.seek(0)

        sealed = envelope.encode(plaintext, self._key)
        # The backend verifies what it stores, which is the ciphertext
        checksum = compute_checksum(sealed)

        self._backend.put(key, sealed, checksum=checksum, content_type=content_type)

        logger.debug(
            "Uploaded encrypted object %s (plaintext=%d bytes, stored=%d bytes)",
            key,
            len(plaintext),
            len(sealed),
        )
        return checksum

    def download(self, key: str) -> bytes:
        """Fetch and decrypt an object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            DecryptionFailedError: If the stored envelope fails authentication.
        """
        return self._decrypt(key, self._backend.get(key))

    def stream(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the decrypted object in chunks.

        Backend chunks are collected until the whole envelope is present;
        nothing is yielded before the tag has been verified.
        """
        data = b"".join(self._backend.iter_chunks(key, chunk_size))
        plaintext = self._decrypt(key, data)

        for offset in range(0, len(plaintext), chunk_size):
            yield plaintext[offset : offset + chunk_size]

    def download_range(self, key: str, byte_range: range) -> bytes:
        """Return plaintext bytes [start, stop) of an object.

        The ciphertext cannot be seeked into, so the whole object is
        downloaded and decrypted before slicing.
        """
        return self.download(key)[byte_range.start : byte_range.stop]

    def delete(self, key: str) -> None:
        """Delete an object."""
        self._backend.delete(key)

    def delete_prefixed(self, prefix: str) -> None:
        """Delete all objects under a key prefix."""
        self._backend.delete_prefixed(prefix)

    def exists(self, key: str) -> bool:
        """Check if an object exists."""
        return self._backend.exists(key)

    def size(self, key: str) -> int:
        """Return the plaintext size of an object without decrypting it.

        Only the stored size and the leading magic bytes are read. Legacy
        plaintext objects report their stored size.
        """
        stored = self._backend.size(key)
        if stored < envelope.HEADER_SIZE_BYTES:
            return stored
        prefix = self._backend.get_range(key, range(0, len(envelope.MAGIC)))
        if envelope.is_encrypted(prefix):
            return stored - envelope.HEADER_SIZE_BYTES
        return stored

    def url(
        self,
        key: str,
        *,
        expires_in: int,
        disposition: str | None = None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Backend URL for the stored object.

        The URL serves the stored bytes, i.e. ciphertext. Browser-facing
        links must go through the decrypting proxy (signsuite.api) instead.
        """
        return self._backend.url(
            key,
            expires_in=expires_in,
            disposition=disposition,
            filename=filename,
            content_type=content_type,
        )

    def direct_upload_url(
        self,
        key: str,
        *,
        expires_in: int,
        content_type: str,
        content_length: int,
        checksum: str,
    ) -> str:
        """Direct upload URL, forwarded unchanged to the backend."""
        return self._backend.direct_upload_url(
            key,
            expires_in=expires_in,
            content_type=content_type,
            content_length=content_length,
            checksum=checksum,
        )

    def direct_upload_headers(
        self,
        key: str,
        *,
        content_type: str,
        checksum: str,
    ) -> dict[str, str]:
        """Direct upload headers, forwarded unchanged to the backend."""
        return self._backend.direct_upload_headers(
            key, content_type=content_type, checksum=checksum
        )

    def compose(self, source_keys: Iterable[str], destination_key: str) -> None:
        """Compose objects on the backend, byte for byte."""
        self._backend.compose(source_keys, destination_key)


def build_storage_service(settings: Settings) -> EncryptedStorageService | StorageBackend:
    """Create the configured storage service.

    Returns the encrypting service when storage encryption is enabled,
    otherwise the bare backend.
    """
    backend = build_backend(settings)
    if not settings.storage.encrypt:
        logger.warning("Storage encryption disabled; blobs are stored in plaintext")
        return backend
    return EncryptedStorageService.from_settings(settings, backend)
