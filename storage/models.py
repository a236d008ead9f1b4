from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
import sqlite3
import uuid

from crypto.codec import EncryptionMaterial
from .db import from_iso, to_iso, utcnow

# Columns safe to return on any read path. Key material is selected only by
# the decrypt path.
PUBLIC_COLUMNS = (
    "object_id, owner, filename, content_type, size, storage_path, stored_name, "
    "algorithm, created_at, deleted, deleted_at"
)


def format_size(nbytes: int) -> str:
    if nbytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = 0
    value = float(nbytes)
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


@dataclass
class StoredObject:
    """
    Describes an encrypted object stored on the local filesystem.

    The `stored_name` is the opaque surrogate filename on disk (the ciphertext
    blob), while `filename` is the display name the uploader supplied.

    `encryption` is only populated on the decrypt path and is excluded from
    repr and `to_dict`.
    """

    object_id: str
    owner: str
    filename: str
    content_type: str
    size: int
    storage_path: str
    stored_name: str
    algorithm: str
    created_at: datetime

    # Soft delete
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    encryption: Optional[EncryptionMaterial] = field(default=None, repr=False, compare=False)

    @staticmethod
    def new(
        owner: str,
        filename: str,
        content_type: str,
        size: int,
        storage_path: str,
        stored_name: str,
        encryption: EncryptionMaterial,
        *,
        object_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "StoredObject":
        return StoredObject(
            object_id=object_id or str(uuid.uuid4()),
            owner=owner,
            filename=filename,
            content_type=content_type,
            size=size,
            storage_path=storage_path,
            stored_name=stored_name,
            algorithm=encryption.algorithm,
            created_at=created_at or utcnow(),
            encryption=encryption,
        )

    @property
    def size_formatted(self) -> str:
        return format_size(self.size)

    def snapshot(self) -> Dict[str, Any]:
        """Display fields copied into audit records."""
        return {"name": self.filename, "size": self.size, "content_type": self.content_type}

    def without_secrets(self) -> "StoredObject":
        if self.encryption is None:
            return self
        return StoredObject(**{**self.__dict__, "encryption": None})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_id": self.object_id,
            "owner": self.owner,
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
            "size_formatted": self.size_formatted,
            "stored_name": self.stored_name,
            "algorithm": self.algorithm,
            "created_at": to_iso(self.created_at),
            "deleted": self.deleted,
            "deleted_at": to_iso(self.deleted_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredObject":
        keys = row.keys()
        encryption = None
        if "enc_key" in keys:
            encryption = EncryptionMaterial(
                algorithm=row["algorithm"],
                key=bytes(row["enc_key"]),
                nonce=bytes(row["enc_nonce"]),
            )
        return cls(
            object_id=row["object_id"],
            owner=row["owner"],
            filename=row["filename"],
            content_type=row["content_type"],
            size=row["size"],
            storage_path=row["storage_path"],
            stored_name=row["stored_name"],
            algorithm=row["algorithm"],
            created_at=from_iso(row["created_at"]),
            deleted=bool(row["deleted"]),
            deleted_at=from_iso(row["deleted_at"]),
            encryption=encryption,
        )
