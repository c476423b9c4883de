"""Pytest configuration and shared fixtures.

Unit tests run without external services: S3 is mocked with moto, the disk
backend writes to tmp_path, and database sessions are AsyncMock objects.
"""

import pytest

from signsuite.core.settings import clear_settings_cache
from signsuite.services.encrypted_storage import EncryptedStorageService
from signsuite.services.key_derivation import derive_key
from signsuite.services.storage import DiskBackend

TEST_KEY_MATERIAL = b"test-storage-key-material-0123456789"


@pytest.fixture(autouse=True)
def clean_settings_cache():
    """Clear settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def key_material() -> bytes:
    """Storage key material used across tests."""
    return TEST_KEY_MATERIAL


@pytest.fixture
def storage_key(key_material: bytes) -> bytes:
    """Derived 32-byte storage key."""
    return derive_key(key_material)


@pytest.fixture
def disk_backend(tmp_path) -> DiskBackend:
    """Disk backend rooted in a temporary directory."""
    return DiskBackend(tmp_path / "blobs", base_url="http://testserver/disk")


@pytest.fixture
def encrypted_storage(disk_backend: DiskBackend, key_material: bytes) -> EncryptedStorageService:
    """Encrypting storage service over the temporary disk backend."""
    return EncryptedStorageService(disk_backend, key_material)
