"""Tests for the blob encryption sweep.

Tests cover:
- Legacy objects are rewritten as envelopes with the same content
- Already encrypted objects are never encrypted twice
- Re-running is a no-op
- One failing object does not stop the sweep
- Dry runs write nothing
- Batching and checkpoints
"""

import uuid
from dataclasses import dataclass

import pytest

from signsuite.services.envelope import MAGIC
from signsuite.services.migration import (
    BlobEncryptionSweeper,
    MigrationItemError,
    SweepResult,
)


@dataclass
class FakeBlob:
    """In-memory blob record."""

    key: str
    blob_id: uuid.UUID
    encrypted: bool = False


class InMemoryBlobRecords:
    """Blob record source backed by a list, paginated like the SQL repository."""

    def __init__(self, blobs: list[FakeBlob]) -> None:
        self.blobs = blobs
        self.checkpoints = 0
        self.batch_sizes: list[int] = []

    async def iter_unencrypted(self, batch_size: int):
        pending = sorted((b for b in self.blobs if not b.encrypted), key=lambda b: b.blob_id)
        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            self.batch_sizes.append(len(batch))
            yield batch

    async def mark_encrypted(self, blob: FakeBlob) -> None:
        blob.encrypted = True

    async def checkpoint(self) -> None:
        self.checkpoints += 1


def make_blobs(*keys: str) -> list[FakeBlob]:
    """Records with ascending ids, in the given key order."""
    return [FakeBlob(key=key, blob_id=uuid.UUID(int=index + 1)) for index, key in enumerate(keys)]


@pytest.fixture
def legacy_blobs(disk_backend):
    """Three plaintext objects and their records."""
    contents = {
        "legacy-1": b"first legacy document",
        "legacy-2": b"",
        "legacy-3": b"%PDF-1.7 third",
    }
    for key, data in contents.items():
        disk_backend.put(key, data)
    return contents


# ---------------------------------------------------------------------------
# Sweep results
# ---------------------------------------------------------------------------
class TestSweepResult:
    """Tests for SweepResult."""

    def test_processed(self):
        """Test processed sums all outcomes."""
        assert SweepResult(converted=2, skipped=1, failed=3).processed == 6

    def test_to_dict(self):
        """Test the summary includes per-item errors."""
        blob_id = uuid.UUID(int=7)
        result = SweepResult(
            failed=1,
            errors=[MigrationItemError("boom", blob_id=blob_id, key="k")],
        )

        summary = result.to_dict()

        assert summary["processed"] == 1
        assert summary["errors"] == [{"blob_id": str(blob_id), "key": "k", "error": "boom"}]


# ---------------------------------------------------------------------------
# Sweep behavior
# ---------------------------------------------------------------------------
class TestBlobEncryptionSweeper:
    """Tests for BlobEncryptionSweeper.run."""

    @pytest.mark.asyncio
    async def test_converts_legacy_objects(self, encrypted_storage, disk_backend, legacy_blobs):
        """Test every legacy object becomes an envelope with the same content."""
        records = InMemoryBlobRecords(make_blobs(*legacy_blobs))

        result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.converted == 3
        assert result.skipped == 0
        assert result.failed == 0
        for key, data in legacy_blobs.items():
            assert disk_backend.get(key).startswith(MAGIC)
            assert encrypted_storage.download(key) == data
        assert all(blob.encrypted for blob in records.blobs)

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, encrypted_storage, disk_backend, legacy_blobs):
        """Test re-running converts nothing and leaves bytes unchanged."""
        records = InMemoryBlobRecords(make_blobs(*legacy_blobs))
        sweeper = BlobEncryptionSweeper(encrypted_storage, records)
        await sweeper.run()
        stored = {key: disk_backend.get(key) for key in legacy_blobs}

        result = await sweeper.run()

        assert result.processed == 0
        assert {key: disk_backend.get(key) for key in legacy_blobs} == stored

    @pytest.mark.asyncio
    async def test_already_encrypted_objects_skipped(self, encrypted_storage, disk_backend):
        """Test envelopes with a stale flag are flagged, not re-encrypted."""
        encrypted_storage.upload("sealed", b"already sealed")
        before = disk_backend.get("sealed")
        records = InMemoryBlobRecords(make_blobs("sealed"))

        result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.converted == 0
        assert result.skipped == 1
        assert disk_backend.get("sealed") == before
        assert records.blobs[0].encrypted is True
        assert encrypted_storage.download("sealed") == b"already sealed"

    @pytest.mark.asyncio
    async def test_interrupted_run_resumes(self, encrypted_storage, disk_backend, legacy_blobs):
        """Test objects converted before a lost flag update are not doubled."""
        records = InMemoryBlobRecords(make_blobs(*legacy_blobs))
        await BlobEncryptionSweeper(encrypted_storage, records).run()
        for blob in records.blobs:
            blob.encrypted = False
        stored = {key: disk_backend.get(key) for key in legacy_blobs}

        result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.converted == 0
        assert result.skipped == 3
        assert {key: disk_backend.get(key) for key in legacy_blobs} == stored

    @pytest.mark.asyncio
    async def test_failure_isolated(self, encrypted_storage, disk_backend, legacy_blobs, caplog):
        """Test a missing object is reported and the rest still convert."""
        records = InMemoryBlobRecords(make_blobs("legacy-1", "vanished", "legacy-3"))

        with caplog.at_level("ERROR"):
            result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.converted == 2
        assert result.failed == 1
        error = result.errors[0]
        assert error.key == "vanished"
        assert error.blob_id == uuid.UUID(int=2)
        assert "ObjectNotFoundError" in str(error)
        assert records.blobs[1].encrypted is False
        assert disk_backend.get("legacy-3").startswith(MAGIC)
        assert "vanished" in caplog.text

    @pytest.mark.asyncio
    async def test_upload_failure_isolated(self, encrypted_storage, legacy_blobs, monkeypatch):
        """Test a failing write leaves the flag unset."""
        records = InMemoryBlobRecords(make_blobs(*legacy_blobs))
        original_upload = encrypted_storage.upload

        def flaky_upload(key, content, **kwargs):
            if key == "legacy-2":
                raise OSError("disk full")
            return original_upload(key, content, **kwargs)

        monkeypatch.setattr(encrypted_storage, "upload", flaky_upload)

        result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.converted == 2
        assert result.failed == 1
        assert [blob.encrypted for blob in records.blobs] == [True, False, True]

    @pytest.mark.asyncio
    async def test_flag_update_failure_isolated(self, encrypted_storage, legacy_blobs):
        """Test a failing flag update is reported and later records still convert."""

        class FlakyFlagRecords(InMemoryBlobRecords):
            async def mark_encrypted(self, blob):
                if blob.key == "legacy-2":
                    raise RuntimeError("flush failed")
                await super().mark_encrypted(blob)

        records = FlakyFlagRecords(make_blobs(*legacy_blobs))

        result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.converted == 2
        assert result.failed == 1
        assert result.errors[0].key == "legacy-2"
        assert "RuntimeError: flush failed" in str(result.errors[0])
        assert [blob.encrypted for blob in records.blobs] == [True, False, True]
        assert records.checkpoints == 1
        assert encrypted_storage.download("legacy-3") == legacy_blobs["legacy-3"]

        # The object itself was sealed, so the next run only fixes the flag
        rerun_records = InMemoryBlobRecords(records.blobs)
        rerun = await BlobEncryptionSweeper(encrypted_storage, rerun_records).run()
        assert rerun.converted == 0
        assert rerun.skipped == 1
        assert all(blob.encrypted for blob in records.blobs)

    @pytest.mark.asyncio
    async def test_plain_legacy_object_converted(self, encrypted_storage, disk_backend):
        """Test an object written before encryption is detected and sealed."""
        disk_backend.put("legacy", b"plain-legacy-data")
        records = InMemoryBlobRecords(make_blobs("legacy"))

        result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.converted == 1
        assert result.skipped == 0
        raw = disk_backend.get("legacy")
        assert raw.startswith(MAGIC)
        assert b"plain-legacy-data" not in raw
        assert encrypted_storage.download("legacy") == b"plain-legacy-data"
        assert records.blobs[0].encrypted is True

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, encrypted_storage, disk_backend, legacy_blobs):
        """Test a dry run counts conversions without touching storage or flags."""
        records = InMemoryBlobRecords(make_blobs(*legacy_blobs))

        result = await BlobEncryptionSweeper(encrypted_storage, records).run(dry_run=True)

        assert result.dry_run is True
        assert result.converted == 3
        assert records.checkpoints == 0
        assert not any(blob.encrypted for blob in records.blobs)
        for key, data in legacy_blobs.items():
            assert disk_backend.get(key) == data

    @pytest.mark.asyncio
    async def test_batches_and_checkpoints(self, encrypted_storage, disk_backend):
        """Test records are processed in batches with a checkpoint per batch."""
        keys = [f"batch-{i}" for i in range(5)]
        for key in keys:
            disk_backend.put(key, key.encode())
        records = InMemoryBlobRecords(make_blobs(*keys))

        result = await BlobEncryptionSweeper(encrypted_storage, records).run(batch_size=2)

        assert result.converted == 5
        assert records.batch_sizes == [2, 2, 1]
        assert records.checkpoints == 3

    @pytest.mark.asyncio
    async def test_empty_source(self, encrypted_storage):
        """Test a sweep with nothing to do."""
        records = InMemoryBlobRecords([])

        result = await BlobEncryptionSweeper(encrypted_storage, records).run()

        assert result.processed == 0
        assert records.checkpoints == 0

    @pytest.mark.parametrize("batch_size", [0, -1])
    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, encrypted_storage, batch_size):
        """Test non-positive batch sizes are rejected."""
        with pytest.raises(ValueError, match="batch_size"):
            await BlobEncryptionSweeper(encrypted_storage, InMemoryBlobRecords([])).run(
                batch_size=batch_size
            )
