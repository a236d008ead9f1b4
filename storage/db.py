# storage/db.py

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from errors import StorageUnavailableError

logger = logging.getLogger(__name__)

_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so lexical and chronological order agree."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_ISO_FORMAT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _ISO_FORMAT).replace(tzinfo=timezone.utc)


def _index_exists(c: sqlite3.Cursor, index_name: str) -> bool:
    c.execute("SELECT name FROM sqlite_master WHERE type='index' AND name=?", (index_name,))
    return c.fetchone() is not None


SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS subjects (
        subject_id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        storage_quota INTEGER NOT NULL,
        storage_used INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS objects (
        object_id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        filename TEXT NOT NULL,
        content_type TEXT NOT NULL,
        size INTEGER NOT NULL,
        storage_path TEXT NOT NULL,
        stored_name TEXT NOT NULL UNIQUE,
        algorithm TEXT NOT NULL,
        enc_key BLOB NOT NULL,
        enc_nonce BLOB NOT NULL,
        created_at TEXT NOT NULL,
        deleted INTEGER NOT NULL DEFAULT 0,
        deleted_at TEXT
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS grants (
        grant_id TEXT PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        object_id TEXT NOT NULL,
        created_by TEXT NOT NULL,
        mode TEXT NOT NULL,
        download_limit INTEGER,          -- NULL for unlimited
        consumed_count INTEGER NOT NULL DEFAULT 0,
        expires_at TEXT NOT NULL,
        password_hash TEXT,
        allowed_emails TEXT NOT NULL DEFAULT '[]',   -- JSON list
        allowed_ips TEXT NOT NULL DEFAULT '[]',      -- JSON list
        requires_auth INTEGER NOT NULL DEFAULT 0,
        custom_message TEXT NOT NULL DEFAULT '',
        notify_on_download INTEGER NOT NULL DEFAULT 0,
        notification_email TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        deactivated_at TEXT,
        deactivation_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_accessed_at TEXT,
        last_access_ip TEXT,
        CHECK (download_limit IS NULL OR consumed_count <= download_limit)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS audit_log (
        record_id TEXT PRIMARY KEY,
        object_id TEXT,                  -- NULL when the object could not be resolved
        grant_id TEXT,                   -- NULL = direct/owner access
        subject_id TEXT,                 -- NULL = anonymous
        ip_address TEXT NOT NULL DEFAULT '',
        user_agent TEXT NOT NULL DEFAULT '',
        referrer TEXT NOT NULL DEFAULT '',
        country TEXT,
        city TEXT,
        region TEXT,
        success INTEGER NOT NULL,
        error_code TEXT,
        error_message TEXT,
        download_type TEXT NOT NULL DEFAULT 'direct',
        snapshot_name TEXT,
        snapshot_size INTEGER,
        snapshot_content_type TEXT,
        accessed_at TEXT NOT NULL,
        duration_ms REAL
    )
    ''',
    '''
    CREATE TRIGGER IF NOT EXISTS audit_log_no_update BEFORE UPDATE ON audit_log BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    ''',
    '''
    CREATE TRIGGER IF NOT EXISTS audit_log_no_delete BEFORE DELETE ON audit_log BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    ''',
]

INDEXES = {
    "idx_objects_owner_created": "objects (owner, created_at DESC)",
    "idx_objects_deleted_owner": "objects (deleted, owner)",
    "idx_grants_object_active": "grants (object_id, active)",
    "idx_grants_creator_active_created": "grants (created_by, active, created_at DESC)",
    "idx_grants_expiry_active": "grants (expires_at, active)",
    "idx_audit_accessed": "audit_log (accessed_at DESC)",
    "idx_audit_object_accessed": "audit_log (object_id, accessed_at DESC)",
    "idx_audit_subject_accessed": "audit_log (subject_id, accessed_at DESC)",
    "idx_audit_grant_accessed": "audit_log (grant_id, accessed_at DESC)",
    "idx_audit_success_accessed": "audit_log (success, accessed_at DESC)",
    "idx_audit_ip_accessed": "audit_log (ip_address, accessed_at DESC)",
}


class Database:
    """Thin SQLite wrapper: one short-lived connection per operation.

    Every backing-store failure surfaces as ``StorageUnavailableError`` so
    callers never see raw ``sqlite3`` exceptions.
    """

    def __init__(self, path: Union[str, Path], timeout: float = 5.0):
        self.path = str(path)
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout,
                                   isolation_level=None, check_same_thread=False)
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open database at {self.path}", cause=e)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection; each statement is its own atomic step."""
        conn = self.connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Database operation failed: {e}", cause=e)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction taken with BEGIN IMMEDIATE; rolled back on any error."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Database transaction failed: {e}", cause=e)
        finally:
            conn.close()

    def init_schema(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            c = conn.cursor()
            for statement in SCHEMA:
                c.execute(statement)
            for name, target in INDEXES.items():
                if not _index_exists(c, name):
                    c.execute(f"CREATE INDEX {name} ON {target}")
        logger.debug("Database schema ready at %s", self.path)
