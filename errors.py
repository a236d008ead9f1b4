"""
ShieldShare error taxonomy.

Every failure that leaves the core is a ``ShareVaultError`` with a stable
``code``. Transports map the code to a response (``http_status`` is the
suggested one); the audit ledger stores it verbatim as ``error_code``.
"""

import logging
from typing import Any, Dict, Optional


class ShareVaultError(Exception):
    """Base exception for all ShieldShare errors.

    Attributes:
        message: Human-readable error message
        code: Stable classification (e.g. 'limit_reached')
        http_status: Suggested status for an HTTP transport
        log_level: Level the download path logs this failure at
        actor: Who attempted the operation ({'type', 'id'}), if known
        details: Extra context safe to show the caller
        cause: Underlying OS or database error, if any
    """

    code: str = "internal"
    http_status: int = 500
    log_level: int = logging.ERROR

    def __init__(
        self,
        message: str,
        actor: Optional[Dict[str, str]] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.actor = actor
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_event(self) -> Dict[str, Any]:
        """Response-shaped dict: what a transport returns and the CLI prints."""
        event: Dict[str, Any] = {
            "error": self.code,
            "status": self.http_status,
            "message": self.message,
        }
        if self.details:
            event["details"] = dict(self.details)
        if self.actor:
            event["actor"] = dict(self.actor)
        if self.cause is not None:
            event["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return event

    def __str__(self) -> str:
        return self.message


# ============================================================================
# Request Errors
# ============================================================================

class ValidationError(ShareVaultError):
    """Malformed input: bad policy values, size mismatch, unknown mode."""
    code = "invalid_request"
    http_status = 400
    log_level = logging.INFO

    def __init__(self, message: str, field: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if field:
            self.details["field"] = field


class NotFoundError(ShareVaultError):
    """Object or grant absent, soft-deleted or already terminal."""
    code = "not_found"
    http_status = 404
    log_level = logging.INFO

    def __init__(self, message: str, resource: str = None,
                 resource_id: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if resource:
            self.details["resource"] = resource
        if resource_id:
            self.details["resource_id"] = resource_id


# ============================================================================
# Access Control Errors
# ============================================================================

class AccessError(ShareVaultError):
    """Base class for access control denials."""
    log_level = logging.WARNING


class AccessDeniedError(AccessError):
    """Ownership, allowlist or network check failed."""
    code = "access_denied"
    http_status = 403

    def __init__(self, message: str, reason: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if reason:
            self.details["reason"] = reason


class AuthRequiredError(AccessError):
    """Grant requires an authenticated subject."""
    code = "auth_required"
    http_status = 401
    log_level = logging.INFO


class PasswordRequiredError(AccessError):
    """Grant is password protected and no secret was supplied."""
    code = "password_required"
    http_status = 401
    log_level = logging.INFO


class InvalidPasswordError(AccessError):
    """A secret was supplied but does not match."""
    code = "invalid_password"
    http_status = 401


class ExpiredError(AccessError):
    """Grant expiry has passed."""
    code = "expired"
    http_status = 410
    log_level = logging.INFO

    def __init__(self, message: str, expires_at: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if expires_at:
            self.details["expires_at"] = expires_at


class LimitReachedError(AccessError):
    """Grant has no access units left."""
    code = "limit_reached"
    http_status = 410
    log_level = logging.INFO

    def __init__(self, message: str, limit: int = None, **kwargs):
        super().__init__(message, **kwargs)
        if limit is not None:
            self.details["limit"] = limit


class QuotaExceededError(AccessError):
    """Owner's storage quota cannot fit the upload."""
    code = "quota_exceeded"
    http_status = 413
    log_level = logging.INFO

    def __init__(self, message: str, requested: int = None,
                 available: int = None, **kwargs):
        super().__init__(message, **kwargs)
        if requested is not None:
            self.details["requested_bytes"] = requested
        if available is not None:
            self.details["available_bytes"] = available


# ============================================================================
# Storage Errors
# ============================================================================

class StorageError(ShareVaultError):
    """Base class for backing store failures."""


class StorageUnavailableError(StorageError):
    """Transient I/O or database failure."""
    code = "storage_unavailable"
    http_status = 503


class IntegrityUnavailableError(StorageError):
    """Object bytes missing from disk despite a valid record."""
    code = "integrity_unavailable"
    http_status = 500
    log_level = logging.CRITICAL

    def __init__(self, message: str, object_id: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if object_id:
            self.details["object_id"] = object_id


# ============================================================================
# Cryptographic Errors
# ============================================================================

class CryptoError(ShareVaultError):
    """Base class for cryptographic operation failures."""
    log_level = logging.CRITICAL


class TamperedObjectError(CryptoError):
    """Authentication tag did not verify. Wrong key or modified blob."""
    code = "integrity_violation"
    http_status = 500


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(ShareVaultError):
    """Invalid or missing configuration."""
    code = "configuration"
