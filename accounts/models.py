from dataclasses import dataclass
import uuid

from storage.db import to_iso, utcnow

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Subject:
    # identity as issued by the session layer
    subject_id: str
    email: str   # canonical (lowercased)
    display_name: str
    role: str
    created_at: str

    # quota counter
    storage_quota: int
    storage_used: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def storage_available(self) -> int:
        return max(0, self.storage_quota - self.storage_used)

    @property
    def storage_percent(self) -> int:
        if self.storage_quota <= 0:
            return 100
        return round(self.storage_used / self.storage_quota * 100)

    # constructor
    @staticmethod
    def new(
        email: str,
        storage_quota: int,
        display_name: str = "",
        role: str = ROLE_USER,
        subject_id: str = None,
    ) -> "Subject":
        return Subject(
            subject_id=subject_id or str(uuid.uuid4()),
            email=email.strip().lower(),
            display_name=display_name,
            role=role,
            created_at=to_iso(utcnow()),
            storage_quota=storage_quota,
        )
