"""SQLAlchemy ORM models for SignSuite storage.

- base: Common metadata and type definitions
- blobs: Stored blob metadata records
"""

from signsuite.db.models.base import Base, metadata
from signsuite.db.models.blobs import StoredBlob

__all__ = [
    "Base",
    "StoredBlob",
    "metadata",
]
