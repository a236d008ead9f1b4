"""Cryptography utilities for encrypted object storage."""

from .codec import (
    AES_256_CTR,
    AES_256_GCM,
    DEFAULT_ALGORITHM,
    EncryptionMaterial,
    generate_material,
    iter_chunks,
    encrypt_stream,
    decrypt_stream,
    encrypt_bytes,
    decrypt_bytes,
)

__all__ = [
    "AES_256_CTR",
    "AES_256_GCM",
    "DEFAULT_ALGORITHM",
    "EncryptionMaterial",
    "generate_material",
    "iter_chunks",
    "encrypt_stream",
    "decrypt_stream",
    "encrypt_bytes",
    "decrypt_bytes",
]
