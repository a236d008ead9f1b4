"""
Streaming object codec.

Each object gets a fresh 256-bit key and nonce. Two modes are supported:

- ``aes-256-ctr``: plain stream cipher. Confidentiality only; a wrong key
  or a modified blob decrypts to garbage without any error.
- ``aes-256-gcm``: authenticated. The 16-byte tag is appended to the end of
  the blob and verified when the stream is exhausted. Plaintext chunks are
  released before verification, so a consumer only learns about tampering
  when the final chunk raises ``TamperedObjectError``.

Both directions are generators over byte chunks, so memory use is bounded by
the chunk size regardless of object size.
"""

import os
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from errors import CryptoError, StorageUnavailableError, TamperedObjectError

AES_256_CTR = "aes-256-ctr"
AES_256_GCM = "aes-256-gcm"
DEFAULT_ALGORITHM = AES_256_CTR

KEY_SIZE = 32
NONCE_SIZES = {AES_256_CTR: 16, AES_256_GCM: 12}
GCM_TAG_SIZE = 16
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class EncryptionMaterial:
    """Key material for one object. Immutable once created."""
    algorithm: str
    key: bytes
    nonce: bytes

    def __post_init__(self):
        if self.algorithm not in NONCE_SIZES:
            raise CryptoError(f"Unsupported algorithm '{self.algorithm}'")
        if len(self.key) != KEY_SIZE:
            raise CryptoError("AES-256 key must be 32 bytes")
        if len(self.nonce) != NONCE_SIZES[self.algorithm]:
            raise CryptoError(
                f"{self.algorithm} nonce must be {NONCE_SIZES[self.algorithm]} bytes"
            )

    def __repr__(self) -> str:
        return f"EncryptionMaterial(algorithm={self.algorithm!r})"

    @property
    def authenticated(self) -> bool:
        return self.algorithm == AES_256_GCM


def generate_material(algorithm: str = DEFAULT_ALGORITHM) -> EncryptionMaterial:
    """Create fresh key material from the OS CSPRNG."""
    if algorithm not in NONCE_SIZES:
        raise CryptoError(f"Unsupported algorithm '{algorithm}'")
    return EncryptionMaterial(
        algorithm=algorithm,
        key=os.urandom(KEY_SIZE),
        nonce=os.urandom(NONCE_SIZES[algorithm]),
    )


def _cipher(material: EncryptionMaterial) -> Cipher:
    if material.algorithm == AES_256_GCM:
        return Cipher(algorithms.AES(material.key), modes.GCM(material.nonce))
    return Cipher(algorithms.AES(material.key), modes.CTR(material.nonce))


def iter_chunks(source: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Read a binary file object in fixed-size chunks."""
    while True:
        try:
            chunk = source.read(chunk_size)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read source stream: {e}", cause=e)
        if not chunk:
            return
        yield chunk


def encrypt_stream(chunks: Iterable[bytes], material: EncryptionMaterial) -> Iterator[bytes]:
    """Encrypt an iterable of plaintext chunks.

    For authenticated mode the tag is emitted as the final chunk.
    """
    encryptor = _cipher(material).encryptor()
    for chunk in chunks:
        if chunk:
            yield encryptor.update(chunk)
    tail = encryptor.finalize()
    if tail:
        yield tail
    if material.authenticated:
        yield encryptor.tag


def decrypt_stream(chunks: Iterable[bytes], material: EncryptionMaterial) -> Iterator[bytes]:
    """Decrypt an iterable of ciphertext chunks produced by ``encrypt_stream``."""
    if not material.authenticated:
        decryptor = _cipher(material).decryptor()
        for chunk in chunks:
            if chunk:
                yield decryptor.update(chunk)
        tail = decryptor.finalize()
        if tail:
            yield tail
        return

    # Hold back the trailing tag bytes until the stream ends.
    decryptor = _cipher(material).decryptor()
    pending = b""
    for chunk in chunks:
        pending += chunk
        if len(pending) > GCM_TAG_SIZE:
            body, pending = pending[:-GCM_TAG_SIZE], pending[-GCM_TAG_SIZE:]
            yield decryptor.update(body)
    if len(pending) != GCM_TAG_SIZE:
        raise TamperedObjectError("Encrypted blob is truncated (missing tag)")
    try:
        tail = decryptor.finalize_with_tag(pending)
    except InvalidTag as e:
        raise TamperedObjectError(
            "Authentication tag mismatch: wrong key or modified blob", cause=e
        )
    if tail:
        yield tail


def encrypt_bytes(plaintext: bytes, material: EncryptionMaterial) -> bytes:
    return b"".join(encrypt_stream([plaintext], material))


def decrypt_bytes(ciphertext: bytes, material: EncryptionMaterial,
                  chunk_size: Optional[int] = None) -> bytes:
    if chunk_size:
        parts = [ciphertext[i:i + chunk_size] for i in range(0, len(ciphertext), chunk_size)]
    else:
        parts = [ciphertext]
    return b"".join(decrypt_stream(parts, material))
