"""Envelope codec for encrypted blob objects.

Every object written through the encrypted storage service is stored as:

    MAGIC (6) || NONCE (12) || TAG (16) || CIPHERTEXT (N)

- MAGIC is the literal b"SSENC1" (format version 1). It is also passed as
  AEAD associated data, so the tag binds the format identity.
- NONCE is random per encryption, never reused under the same key.
- TAG is the 16-byte AES-GCM authentication tag.
- CIPHERTEXT has the same length as the plaintext.

Data that does not start with MAGIC is a legacy object, stored in plaintext
before encryption was enabled. decode() returns it unchanged; this keeps old
objects readable and is not an error.

Uses the `cryptography` library (pyca/cryptography) AESGCM primitive, which
returns ciphertext || tag; the codec reorders that into the stored layout.
"""

from __future__ import annotations

import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

MAGIC = b"SSENC1"
# GCM nonce should be 12 bytes per NIST recommendations
NONCE_SIZE_BYTES = 12
# GCM tag is 16 bytes (128 bits)
TAG_SIZE_BYTES = 16
# AES-256 requires 32-byte key
KEY_SIZE_BYTES = 32
HEADER_SIZE_BYTES = len(MAGIC) + NONCE_SIZE_BYTES + TAG_SIZE_BYTES


class EnvelopeError(Exception):
    """Base exception for envelope codec operations."""


class DecryptionFailedError(EnvelopeError):
    """Raised when an envelope cannot be authenticated.

    Covers tag mismatch, wrong key and truncated envelopes. Callers must
    treat the object as unreadable.
    """


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE_BYTES:
        msg = f"Storage key must be {KEY_SIZE_BYTES} bytes, got {len(key)}"
        raise ValueError(msg)


def is_encrypted(data: bytes | bytearray | memoryview) -> bool:
    """Check whether data carries the envelope magic prefix."""
    return bytes(data[: len(MAGIC)]) == MAGIC


def encode(plaintext: bytes | bytearray | memoryview, key: bytes) -> bytes:
    """Encrypt plaintext into an envelope.

    Args:
        plaintext: Object content (may be empty).
        key: 32-byte storage key.

    Returns:
        MAGIC || nonce || tag || ciphertext, len(plaintext) + 34 bytes.
    """
    _check_key(key)

    nonce = os.urandom(NONCE_SIZE_BYTES)
    sealed = AESGCM(key).encrypt(nonce, bytes(plaintext), MAGIC)
    ciphertext, tag = sealed[:-TAG_SIZE_BYTES], sealed[-TAG_SIZE_BYTES:]

    return MAGIC + nonce + tag + ciphertext


def decode(data: bytes | bytearray | memoryview, key: bytes) -> bytes:
    """Decrypt an envelope, or pass legacy plaintext through.

    Args:
        data: Raw stored object bytes.
        key: 32-byte storage key.

    Returns:
        The authenticated plaintext, or data itself when it is not an
        envelope.

    Raises:
        DecryptionFailedError: If the envelope is truncated or fails
            authentication.
    """
    _check_key(key)
    data = bytes(data)

    if not is_encrypted(data):
        logger.info("Object not encrypted (legacy), returning raw bytes")
        return data

    if len(data) < HEADER_SIZE_BYTES:
        msg = f"Envelope truncated: {len(data)} bytes, header needs {HEADER_SIZE_BYTES}"
        raise DecryptionFailedError(msg)

    offset = len(MAGIC)
    nonce = data[offset : offset + NONCE_SIZE_BYTES]
    offset += NONCE_SIZE_BYTES
    tag = data[offset : offset + TAG_SIZE_BYTES]
    offset += TAG_SIZE_BYTES
    ciphertext = data[offset:]

    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, MAGIC)
    except InvalidTag as e:
        raise DecryptionFailedError("Envelope authentication failed") from e
