from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
import sqlite3
import uuid

from storage.db import from_iso, to_iso, utcnow

DOWNLOAD_TYPES = ("direct", "share_link", "api")


@dataclass(frozen=True)
class AuditRecord:
    """One access attempt. Never mutated once written."""
    success: bool
    object_id: Optional[str] = None
    grant_id: Optional[str] = None      # None = direct/owner access
    subject_id: Optional[str] = None    # None = anonymous
    ip_address: str = ""
    user_agent: str = ""
    referrer: str = ""
    location: Dict[str, Optional[str]] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    download_type: str = "direct"
    # snapshot of the object at access time, survives object deletion
    snapshot: Dict[str, Any] = field(default_factory=dict)
    duration_ms: Optional[float] = None
    accessed_at: datetime = field(default_factory=utcnow)
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "object_id": self.object_id,
            "grant_id": self.grant_id,
            "subject_id": self.subject_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "referrer": self.referrer,
            "location": dict(self.location),
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "download_type": self.download_type,
            "snapshot": dict(self.snapshot),
            "accessed_at": to_iso(self.accessed_at),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditRecord":
        return cls(
            record_id=row["record_id"],
            object_id=row["object_id"],
            grant_id=row["grant_id"],
            subject_id=row["subject_id"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            referrer=row["referrer"],
            location={"country": row["country"], "city": row["city"], "region": row["region"]},
            success=bool(row["success"]),
            error_code=row["error_code"],
            error_message=row["error_message"],
            download_type=row["download_type"],
            snapshot={"name": row["snapshot_name"], "size": row["snapshot_size"],
                      "content_type": row["snapshot_content_type"]},
            accessed_at=from_iso(row["accessed_at"]),
            duration_ms=row["duration_ms"],
        )
