"""
Share-link (access grant) records.

Derived fields such as expiry, limit and remaining downloads are computed
from stored fields at read time and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import ipaddress
import json
import math
import secrets
import sqlite3
import uuid

from errors import ValidationError
from storage.db import from_iso, to_iso, utcnow

TOKEN_BYTES = 32
MAX_MESSAGE_LENGTH = 500


class AccessMode(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    UNLIMITED = "unlimited"


class DeactivationReason(str, Enum):
    MANUAL = "manual"
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"
    OBJECT_DELETED = "object_deleted"
    ADMIN = "admin"


class GrantState(str, Enum):
    ACTIVE_USABLE = "active-usable"
    ACTIVE_EXPIRED = "active-expired"
    ACTIVE_LIMITED = "active-limited"
    INACTIVE = "inactive"


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    """URL-safe token carrying 8*nbytes bits of entropy."""
    return secrets.token_urlsafe(nbytes)


def _format_remaining(delta: timedelta) -> str:
    seconds = int(delta.total_seconds())
    if seconds <= 0:
        return "Expired"
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60

    def unit(n, word):
        return f"{n} {word}" + ("" if n == 1 else "s")

    if days > 0:
        return f"{unit(days, 'day')} {unit(hours, 'hour')}"
    if hours > 0:
        return f"{unit(hours, 'hour')} {unit(minutes, 'minute')}"
    return unit(minutes, "minute")


@dataclass
class Grant:
    grant_id: str
    token: str
    object_id: str
    created_by: str
    mode: AccessMode
    download_limit: Optional[int]  # None for unlimited
    expires_at: datetime
    consumed_count: int = 0

    # optional gates
    password_hash: Optional[str] = field(default=None, repr=False)
    allowed_emails: List[str] = field(default_factory=list)
    allowed_ips: List[str] = field(default_factory=list)
    requires_auth: bool = False

    custom_message: str = ""
    notify_on_download: bool = False
    notification_email: Optional[str] = None

    # status
    active: bool = True
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[DeactivationReason] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    last_access_ip: Optional[str] = None

    # --------------------------------------------------------------- derived

    @property
    def effective_limit(self) -> Union[int, float]:
        if self.mode == AccessMode.UNLIMITED:
            return math.inf
        if self.mode == AccessMode.SINGLE:
            return 1
        return self.download_limit

    @property
    def is_password_protected(self) -> bool:
        return bool(self.password_hash)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    @property
    def is_limit_reached(self) -> bool:
        if self.mode == AccessMode.UNLIMITED:
            return False
        return self.consumed_count >= self.effective_limit

    def can_be_used(self, now: Optional[datetime] = None) -> bool:
        return self.active and not self.is_expired(now) and not self.is_limit_reached

    @property
    def remaining_downloads(self) -> Union[int, float]:
        if self.mode == AccessMode.UNLIMITED:
            return math.inf
        return max(0, self.effective_limit - self.consumed_count)

    def expires_in(self, now: Optional[datetime] = None) -> str:
        return _format_remaining(self.expires_at - (now or utcnow()))

    def state(self, now: Optional[datetime] = None) -> GrantState:
        if not self.active:
            return GrantState.INACTIVE
        if self.is_expired(now):
            return GrantState.ACTIVE_EXPIRED
        if self.is_limit_reached:
            return GrantState.ACTIVE_LIMITED
        return GrantState.ACTIVE_USABLE

    def share_url(self, base_url: str) -> str:
        return f"{base_url.rstrip('/')}/share/{self.token}"

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        remaining = self.remaining_downloads
        return {
            "grant_id": self.grant_id,
            "token": self.token,
            "object_id": self.object_id,
            "created_by": self.created_by,
            "mode": self.mode.value,
            "download_limit": self.download_limit,
            "consumed_count": self.consumed_count,
            "remaining_downloads": None if remaining == math.inf else remaining,
            "unlimited": self.mode == AccessMode.UNLIMITED,
            "expires_at": to_iso(self.expires_at),
            "expires_in": self.expires_in(now),
            "is_password_protected": self.is_password_protected,
            "allowed_emails": list(self.allowed_emails),
            "allowed_ips": list(self.allowed_ips),
            "requires_auth": self.requires_auth,
            "custom_message": self.custom_message,
            "notify_on_download": self.notify_on_download,
            "notification_email": self.notification_email,
            "active": self.active,
            "state": self.state(now).value,
            "can_be_used": self.can_be_used(now),
            "deactivated_at": to_iso(self.deactivated_at),
            "deactivation_reason": (self.deactivation_reason.value
                                    if self.deactivation_reason else None),
            "created_at": to_iso(self.created_at),
            "last_accessed_at": to_iso(self.last_accessed_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Grant":
        reason = row["deactivation_reason"]
        return cls(
            grant_id=row["grant_id"],
            token=row["token"],
            object_id=row["object_id"],
            created_by=row["created_by"],
            mode=AccessMode(row["mode"]),
            download_limit=row["download_limit"],
            consumed_count=row["consumed_count"],
            expires_at=from_iso(row["expires_at"]),
            password_hash=row["password_hash"],
            allowed_emails=json.loads(row["allowed_emails"]),
            allowed_ips=json.loads(row["allowed_ips"]),
            requires_auth=bool(row["requires_auth"]),
            custom_message=row["custom_message"],
            notify_on_download=bool(row["notify_on_download"]),
            notification_email=row["notification_email"],
            active=bool(row["active"]),
            deactivated_at=from_iso(row["deactivated_at"]),
            deactivation_reason=DeactivationReason(reason) if reason else None,
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            last_accessed_at=from_iso(row["last_accessed_at"]),
            last_access_ip=row["last_access_ip"],
        )


@dataclass
class GrantPolicy:
    """Caller-supplied policy for a new grant, before normalization."""
    mode: Union[AccessMode, str] = AccessMode.MULTIPLE
    download_limit: Optional[int] = None
    expires_in_hours: Optional[float] = None
    expires_at: Optional[datetime] = None
    password: Optional[str] = None
    allowed_ips: List[str] = field(default_factory=list)
    allowed_emails: List[str] = field(default_factory=list)
    requires_auth: bool = False
    custom_message: str = ""
    notify_on_download: bool = False
    notification_email: Optional[str] = None

    def normalized(self, *, now: datetime, default_limit: int, default_hours: float,
                   max_limit: int) -> "GrantPolicy":
        """Validate and pin policy fields: single => limit 1, unlimited => no limit."""
        try:
            mode = AccessMode(self.mode)
        except ValueError:
            raise ValidationError(f"Unknown access mode '{self.mode}'", field="mode")

        if mode == AccessMode.SINGLE:
            limit = 1
        elif mode == AccessMode.UNLIMITED:
            limit = None
        else:
            limit = default_limit if self.download_limit is None else self.download_limit
            validate_limit(limit, max_limit)

        if self.expires_at is not None:
            expires_at = self.expires_at
            if expires_at.tzinfo is None:
                raise ValidationError("expires_at must be timezone-aware", field="expires_at")
        else:
            hours = default_hours if self.expires_in_hours is None else self.expires_in_hours
            if hours <= 0:
                raise ValidationError("expires_in_hours must be positive", field="expires_in_hours")
            expires_at = now + timedelta(hours=hours)
        if expires_at <= now:
            raise ValidationError("expiry must be in the future", field="expires_at")

        return GrantPolicy(
            mode=mode,
            download_limit=limit,
            expires_at=expires_at,
            password=self.password or None,
            allowed_ips=normalize_ips(self.allowed_ips),
            allowed_emails=normalize_emails(self.allowed_emails),
            requires_auth=bool(self.requires_auth),
            custom_message=validate_message(self.custom_message),
            notify_on_download=bool(self.notify_on_download),
            notification_email=(self.notification_email or None),
        )


@dataclass
class AccessContext:
    """What a downloader presents alongside a token."""
    address: Optional[str] = None
    subject_id: Optional[str] = None
    secret: Optional[str] = None
    user_agent: str = ""
    referrer: str = ""
    location: Dict[str, Optional[str]] = field(default_factory=dict)


def validate_limit(limit, max_limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError("download_limit must be an integer", field="download_limit")
    if not 1 <= limit <= max_limit:
        raise ValidationError(
            f"download_limit must be between 1 and {max_limit}", field="download_limit"
        )
    return limit


def validate_message(message: Optional[str]) -> str:
    message = message or ""
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"custom_message must be at most {MAX_MESSAGE_LENGTH} characters",
            field="custom_message",
        )
    return message


def normalize_emails(emails) -> List[str]:
    return sorted({e.strip().lower() for e in (emails or []) if e and e.strip()})


def normalize_ips(ips) -> List[str]:
    result = []
    for ip in ips or []:
        try:
            result.append(str(ipaddress.ip_address(ip.strip())))
        except ValueError:
            raise ValidationError(f"'{ip}' is not an IP literal", field="allowed_ips")
    return sorted(set(result))


def new_grant_id() -> str:
    return str(uuid.uuid4())
