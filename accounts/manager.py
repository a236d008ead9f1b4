import logging
from typing import Optional, List, Dict, Any

from errors import NotFoundError, ValidationError
from storage.models import format_size
from .models import Subject, ROLE_ADMIN, ROLE_USER
from .storage import ISubjectStore

logger = logging.getLogger(__name__)


class AccountManager:
    """Registry of subjects known to the core.

    Sessions and login live outside this package; this only answers the
    questions the core asks about an actor (email, role, quota).
    """

    def __init__(self, storage: ISubjectStore, default_quota: int):
        self.storage = storage
        self.default_quota = default_quota

    @staticmethod
    def _canon(email: str) -> str:
        return email.strip().lower()

    def register(self, email: str, display_name: str = "", *, role: str = ROLE_USER,
                 storage_quota: Optional[int] = None, subject_id: Optional[str] = None) -> Subject:
        email_c = self._canon(email)
        if not email_c or "@" not in email_c:
            raise ValidationError("A valid email is required", field="email")
        if role not in (ROLE_USER, ROLE_ADMIN):
            raise ValidationError(f"Unknown role '{role}'", field="role")
        if self.storage.get_by_email(email_c):
            raise ValidationError("Email already registered.", field="email")
        quota = self.default_quota if storage_quota is None else storage_quota
        if quota < 0:
            raise ValidationError("storage_quota must not be negative", field="storage_quota")
        subject = Subject.new(email_c, quota, display_name=display_name,
                              role=role, subject_id=subject_id)
        self.storage.save(subject)
        logger.info("Registered subject %s (%s)", subject.subject_id, role)
        return subject

    def get(self, subject_id: str) -> Subject:
        subject = self.storage.get(subject_id)
        if not subject:
            raise NotFoundError("Subject not found", resource="subject", resource_id=subject_id)
        return subject

    def find(self, subject_id: Optional[str]) -> Optional[Subject]:
        if not subject_id:
            return None
        return self.storage.get(subject_id)

    def email_of(self, subject_id: Optional[str]) -> Optional[str]:
        subject = self.find(subject_id)
        return subject.email if subject else None

    def is_admin(self, subject_id: Optional[str]) -> bool:
        subject = self.find(subject_id)
        return bool(subject and subject.is_admin)

    def get_all(self) -> List[Subject]:
        return self.storage.get_all()

    def storage_info(self, subject_id: str) -> Dict[str, Any]:
        subject = self.get(subject_id)
        return {
            "used": format_size(subject.storage_used),
            "quota": format_size(subject.storage_quota),
            "available": format_size(subject.storage_available),
            "percent": subject.storage_percent,
            "used_bytes": subject.storage_used,
            "quota_bytes": subject.storage_quota,
        }
