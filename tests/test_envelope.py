"""Tests for the SSENC1 envelope codec.

Tests cover:
- Round-trip for empty, small and large payloads
- Envelope layout and length
- Tamper detection on every field
- Legacy pass-through
- Nonce uniqueness
"""

import pytest

from signsuite.services.envelope import (
    HEADER_SIZE_BYTES,
    MAGIC,
    NONCE_SIZE_BYTES,
    TAG_SIZE_BYTES,
    DecryptionFailedError,
    EnvelopeError,
    decode,
    encode,
    is_encrypted,
)
from signsuite.services.key_derivation import derive_key


@pytest.fixture
def other_key() -> bytes:
    """A storage key derived from different material."""
    return derive_key(b"some-other-key-material")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
class TestEnvelopeConstants:
    """Tests for the wire format constants."""

    def test_magic_marker(self):
        """Test the format marker is the 6-byte version 1 literal."""
        assert MAGIC == b"SSENC1"
        assert len(MAGIC) == 6

    def test_header_size(self):
        """Test header is magic + nonce + tag."""
        assert NONCE_SIZE_BYTES == 12
        assert TAG_SIZE_BYTES == 16
        assert HEADER_SIZE_BYTES == 34


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------
class TestRoundTrip:
    """Tests for encode followed by decode."""

    @pytest.mark.parametrize(
        "plaintext",
        [
            b"",
            b"x",
            b"hello world",
            bytes(range(256)),
            b"SSENC1 inside the plaintext is fine",
            b"\x00" * 100_000,
        ],
    )
    def test_round_trip(self, plaintext, storage_key):
        """Test decode(encode(p)) == p."""
        assert decode(encode(plaintext, storage_key), storage_key) == plaintext

    def test_accepts_bytearray_and_memoryview(self, storage_key):
        """Test non-bytes buffers are accepted on both sides."""
        sealed = encode(bytearray(b"buffer"), storage_key)
        assert decode(memoryview(sealed), storage_key) == b"buffer"

    def test_envelope_layout(self, storage_key):
        """Test encoded bytes start with magic and have the expected length."""
        sealed = encode(b"hello world", storage_key)

        assert sealed.startswith(MAGIC)
        assert len(sealed) == 45
        # Ciphertext is not the plaintext
        assert b"hello world" not in sealed

    @pytest.mark.parametrize("size", [0, 1, 15, 16, 17, 1024])
    def test_envelope_length_invariant(self, size, storage_key):
        """Test len(envelope) == 6 + 12 + 16 + len(plaintext)."""
        assert len(encode(b"a" * size, storage_key)) == 6 + 12 + 16 + size

    def test_nonce_uniqueness(self, storage_key):
        """Test encoding the same plaintext twice gives different envelopes."""
        first = encode(b"same content", storage_key)
        second = encode(b"same content", storage_key)

        nonce_slice = slice(6, 6 + NONCE_SIZE_BYTES)
        assert first[nonce_slice] != second[nonce_slice]
        assert first[HEADER_SIZE_BYTES - TAG_SIZE_BYTES :] != second[HEADER_SIZE_BYTES - TAG_SIZE_BYTES :]

    def test_invalid_key_length_rejected(self):
        """Test keys that are not 32 bytes raise ValueError."""
        with pytest.raises(ValueError, match="32 bytes"):
            encode(b"data", b"short")
        with pytest.raises(ValueError, match="32 bytes"):
            decode(b"data", b"k" * 16)


# ---------------------------------------------------------------------------
# Tamper detection
# ---------------------------------------------------------------------------
class TestTamperDetection:
    """Tests that modified envelopes never decode."""

    @pytest.mark.parametrize(
        "position",
        [
            6,  # first nonce byte
            6 + NONCE_SIZE_BYTES - 1,  # last nonce byte
            18,  # first tag byte
            HEADER_SIZE_BYTES - 1,  # last tag byte
            HEADER_SIZE_BYTES,  # first ciphertext byte
            -1,  # last ciphertext byte
        ],
    )
    def test_bit_flip_detected(self, position, storage_key):
        """Test flipping a single bit in nonce, tag or ciphertext fails."""
        sealed = bytearray(encode(b"signed contract body", storage_key))
        sealed[position] ^= 0x01

        with pytest.raises(DecryptionFailedError):
            decode(bytes(sealed), storage_key)

    def test_every_bit_of_small_envelope(self, storage_key):
        """Test every single-bit flip after the magic is detected."""
        sealed = encode(b"abc", storage_key)
        for index in range(len(MAGIC), len(sealed)):
            for bit in range(8):
                tampered = bytearray(sealed)
                tampered[index] ^= 1 << bit
                with pytest.raises(DecryptionFailedError):
                    decode(bytes(tampered), storage_key)

    def test_wrong_key(self, storage_key, other_key):
        """Test decoding with another key fails."""
        sealed = encode(b"secret", storage_key)

        with pytest.raises(DecryptionFailedError):
            decode(sealed, other_key)

    @pytest.mark.parametrize("length", [6, 7, 18, 33])
    def test_truncated_header(self, length, storage_key):
        """Test envelopes shorter than the header fail."""
        sealed = encode(b"payload", storage_key)

        with pytest.raises(DecryptionFailedError, match="truncated"):
            decode(sealed[:length], storage_key)

    def test_truncated_ciphertext(self, storage_key):
        """Test dropping ciphertext bytes fails authentication."""
        sealed = encode(b"payload", storage_key)

        with pytest.raises(DecryptionFailedError):
            decode(sealed[:-1], storage_key)

    def test_appended_bytes(self, storage_key):
        """Test extra trailing bytes fail authentication."""
        sealed = encode(b"payload", storage_key)

        with pytest.raises(DecryptionFailedError):
            decode(sealed + b"\x00", storage_key)

    def test_decryption_failed_is_envelope_error(self):
        """Test the error hierarchy."""
        assert issubclass(DecryptionFailedError, EnvelopeError)


# ---------------------------------------------------------------------------
# Legacy pass-through
# ---------------------------------------------------------------------------
class TestLegacyPassThrough:
    """Tests for objects stored before encryption was enabled."""

    @pytest.mark.parametrize(
        "data",
        [
            b"",
            b"S",
            b"SSENC",
            b"SSENC2 other version",
            b"plain-legacy-data",
            b"%PDF-1.7\n...",
        ],
    )
    def test_returned_unchanged(self, data, storage_key):
        """Test non-envelope data decodes to itself."""
        assert decode(data, storage_key) == data
        assert not is_encrypted(data)

    def test_is_encrypted(self, storage_key):
        """Test detection uses the magic prefix."""
        assert is_encrypted(encode(b"x", storage_key))
        assert is_encrypted(MAGIC)
        assert not is_encrypted(b"ssenc1")
