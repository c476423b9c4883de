"""SignSuite storage service layer.

- key_derivation: HKDF storage key and key-material fallback ladder
- envelope: AES-256-GCM envelope codec (SSENC1 format)
- storage: Backend capability protocol, S3 and disk backends
- encrypted_storage: EncryptedStorageService, encryption at rest over a backend
- blob_records: Blob metadata repository
- migration: Encryption sweep for legacy plaintext blobs
"""

from signsuite.services.encrypted_storage import (
    EncryptedStorageService,
    build_storage_service,
)
from signsuite.services.envelope import DecryptionFailedError, EnvelopeError
from signsuite.services.key_derivation import derive_key, load_storage_key
from signsuite.services.migration import (
    BlobEncryptionSweeper,
    MigrationItemError,
    SweepResult,
)
from signsuite.services.storage import (
    DiskBackend,
    ObjectNotFoundError,
    S3Backend,
    StorageBackend,
    StorageError,
)

__all__ = [
    "BlobEncryptionSweeper",
    "DecryptionFailedError",
    "DiskBackend",
    "EncryptedStorageService",
    "EnvelopeError",
    "MigrationItemError",
    "ObjectNotFoundError",
    "S3Backend",
    "StorageBackend",
    "StorageError",
    "SweepResult",
    "build_storage_service",
    "derive_key",
    "load_storage_key",
]
