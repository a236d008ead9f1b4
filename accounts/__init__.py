"""Subject registry: the actor collaborator consumed by the core."""

from .authorization import ensure_owner, is_owner
from .hashing import SimpleHasher
from .manager import AccountManager
from .models import Subject, ROLE_ADMIN, ROLE_USER
from .storage import ISubjectStore, SQLiteSubjectStore

__all__ = [
    "ensure_owner",
    "is_owner",
    "SimpleHasher",
    "AccountManager",
    "Subject",
    "ROLE_ADMIN",
    "ROLE_USER",
    "ISubjectStore",
    "SQLiteSubjectStore",
]
