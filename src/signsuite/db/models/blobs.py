"""Stored blob records.

One row per object in blob storage. The `encrypted` flag tracks progress of
the encryption sweep only: whether an object is actually encrypted is
decided by the envelope magic in its stored bytes, never by this column.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, Index, String, false
from sqlalchemy.orm import Mapped, mapped_column

from signsuite.db.models.base import Base, TimestampTZ, UUIDPrimaryKey


class StoredBlob(Base):
    """Metadata record of a stored blob."""

    __tablename__ = "stored_blobs"

    blob_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    # Backend object key
    key: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)

    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plaintext size; the stored object is 34 bytes larger once encrypted
    byte_size: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Base64 MD5 of the bytes as stored in the backend
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)

    encrypted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    __table_args__ = (Index("ix_stored_blobs_encrypted", "encrypted"),)

    def __repr__(self) -> str:
        return f"<StoredBlob {self.blob_id} key={self.key} encrypted={self.encrypted}>"
