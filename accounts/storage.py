from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Optional, List
import logging
import sqlite3

from errors import StorageUnavailableError, ValidationError
from storage.db import Database
from .models import Subject

logger = logging.getLogger(__name__)

_COLUMNS = "subject_id, email, display_name, role, created_at, storage_quota, storage_used"


def _make_subject(row: sqlite3.Row) -> Subject:
    return Subject(**{k: row[k] for k in row.keys()})


class ISubjectStore(ABC):
    @abstractmethod
    def get(self, subject_id: str) -> Optional[Subject]: ...
    @abstractmethod
    def get_by_email(self, email: str) -> Optional[Subject]: ...
    @abstractmethod
    def save(self, subject: Subject) -> None: ...
    @abstractmethod
    def get_all(self) -> List[Subject]: ...
    @abstractmethod
    def reserve_quota(self, subject_id: str, nbytes: int) -> bool: ...
    @abstractmethod
    def release_quota(self, subject_id: str, nbytes: int) -> None: ...


class SQLiteSubjectStore(ISubjectStore):
    """Subjects live in the same database as objects so quota changes can
    join object transactions."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, subject_id: str) -> Optional[Subject]:
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM subjects WHERE subject_id = ?", (subject_id,)
            ).fetchone()
        return _make_subject(row) if row else None

    def get_by_email(self, email: str) -> Optional[Subject]:
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM subjects WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
        return _make_subject(row) if row else None

    def save(self, subject: Subject) -> None:
        try:
            with self.db.connection() as conn:
                conn.execute(
                    f"INSERT INTO subjects ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (subject.subject_id, subject.email, subject.display_name, subject.role,
                     subject.created_at, subject.storage_quota, subject.storage_used),
                )
        except StorageUnavailableError as e:
            if isinstance(e.cause, sqlite3.IntegrityError):
                raise ValidationError("email or subject id already exists", field="email")
            raise

    def get_all(self) -> List[Subject]:
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM subjects ORDER BY created_at"
            ).fetchall()
        return [_make_subject(r) for r in rows]

    def reserve_quota(self, subject_id: str, nbytes: int) -> bool:
        """Check-and-reserve in one conditional update."""
        with self.db.connection() as conn:
            cur = conn.execute(
                "UPDATE subjects SET storage_used = storage_used + ? "
                "WHERE subject_id = ? AND storage_used + ? <= storage_quota",
                (nbytes, subject_id, nbytes),
            )
            return cur.rowcount == 1

    def release_quota(self, subject_id: str, nbytes: int,
                      conn: Optional[sqlite3.Connection] = None) -> None:
        sql = ("UPDATE subjects SET storage_used = MAX(0, storage_used - ?) "
               "WHERE subject_id = ?")
        if conn is not None:
            conn.execute(sql, (nbytes, subject_id))
            return
        with self.db.connection() as own:
            own.execute(sql, (nbytes, subject_id))

    def set_quota(self, subject_id: str, storage_quota: int) -> bool:
        with self.db.connection() as conn:
            cur = conn.execute(
                "UPDATE subjects SET storage_quota = ? WHERE subject_id = ?",
                (storage_quota, subject_id),
            )
            return cur.rowcount == 1
