"""Argon2 hashing of share-link passwords."""

from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from errors import ValidationError


class SimpleHasher:
    def __init__(self, hasher: Optional[PasswordHasher] = None):
        self._ph = hasher or PasswordHasher()

    def hash(self, secret: str) -> str:
        if not secret:
            raise ValidationError("password cannot be empty", field="password")
        return self._ph.hash(secret)

    def verify(self, stored_hash: Optional[str], attempt: Optional[str]) -> bool:
        """True only for a non-empty attempt matching a well-formed hash."""
        if not stored_hash or not attempt:
            return False
        try:
            return self._ph.verify(stored_hash, attempt)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False
