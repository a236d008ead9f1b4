"""
Tests for crypto/codec.py - streaming encryption of object bytes.
"""
import io

import pytest

from crypto.codec import (
    AES_256_CTR,
    AES_256_GCM,
    GCM_TAG_SIZE,
    EncryptionMaterial,
    decrypt_bytes,
    decrypt_stream,
    encrypt_bytes,
    encrypt_stream,
    generate_material,
    iter_chunks,
)
from errors import CryptoError, StorageUnavailableError, TamperedObjectError


class TestMaterial:
    def test_sizes(self):
        ctr = generate_material(AES_256_CTR)
        gcm = generate_material(AES_256_GCM)
        assert len(ctr.key) == 32 and len(ctr.nonce) == 16
        assert len(gcm.key) == 32 and len(gcm.nonce) == 12
        assert gcm.authenticated and not ctr.authenticated

    def test_fresh_each_time(self):
        a, b = generate_material(), generate_material()
        assert a.key != b.key
        assert a.nonce != b.nonce

    def test_repr_hides_secrets(self):
        m = generate_material()
        assert m.key.hex() not in repr(m)

    def test_rejects_bad_lengths(self):
        with pytest.raises(CryptoError):
            EncryptionMaterial(AES_256_CTR, b"short", b"\x00" * 16)
        with pytest.raises(CryptoError):
            EncryptionMaterial(AES_256_GCM, b"\x00" * 32, b"\x00" * 16)

    def test_unknown_algorithm(self):
        with pytest.raises(CryptoError):
            generate_material("rot13")


class TestCtr:
    def test_round_trip_with_odd_chunking(self):
        m = generate_material(AES_256_CTR)
        data = b"x" * 5000 + b"yz"
        ct = encrypt_bytes(data, m)
        assert len(ct) == len(data)
        assert ct != data
        assert decrypt_bytes(ct, m, chunk_size=333) == data

    def test_empty(self):
        m = generate_material(AES_256_CTR)
        assert decrypt_bytes(encrypt_bytes(b"", m), m) == b""

    def test_wrong_key_is_silent_garbage(self):
        m = generate_material(AES_256_CTR)
        ct = encrypt_bytes(b"confidential", m)
        out = decrypt_bytes(ct, generate_material(AES_256_CTR))
        assert out != b"confidential"
        assert len(out) == len(ct)

    def test_streams_lazily(self):
        m = generate_material(AES_256_CTR)
        seen = []

        def source():
            for i in range(3):
                seen.append(i)
                yield bytes([i]) * 10

        stream = encrypt_stream(source(), m)
        next(stream)
        assert seen == [0]


class TestGcm:
    def test_round_trip_appends_tag(self):
        m = generate_material(AES_256_GCM)
        data = b"authenticated payload" * 100
        ct = encrypt_bytes(data, m)
        assert len(ct) == len(data) + GCM_TAG_SIZE
        assert decrypt_bytes(ct, m, chunk_size=7) == data

    def test_tampered_blob(self):
        m = generate_material(AES_256_GCM)
        ct = bytearray(encrypt_bytes(b"do not touch", m))
        ct[0] ^= 0x01
        with pytest.raises(TamperedObjectError):
            decrypt_bytes(bytes(ct), m)

    def test_wrong_key(self):
        ct = encrypt_bytes(b"secret", generate_material(AES_256_GCM))
        with pytest.raises(TamperedObjectError):
            decrypt_bytes(ct, generate_material(AES_256_GCM))

    def test_truncated(self):
        m = generate_material(AES_256_GCM)
        with pytest.raises(TamperedObjectError):
            list(decrypt_stream([b"\x00" * 5], m))


class TestIterChunks:
    def test_chunks(self):
        assert list(iter_chunks(io.BytesIO(b"abcdefg"), 3)) == [b"abc", b"def", b"g"]

    def test_read_error_is_storage_unavailable(self):
        class Broken(io.RawIOBase):
            def read(self, n=-1):
                raise OSError("disk gone")

        with pytest.raises(StorageUnavailableError):
            list(iter_chunks(Broken(), 16))
