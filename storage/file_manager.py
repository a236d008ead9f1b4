from pathlib import Path
import logging
import os
import tempfile
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple, Union
import uuid

from accounts.authorization import ensure_owner
from crypto.codec import (
    DEFAULT_ALGORITHM,
    CHUNK_SIZE,
    decrypt_stream,
    encrypt_stream,
    generate_material,
    iter_chunks,
)
from errors import (
    IntegrityUnavailableError,
    NotFoundError,
    QuotaExceededError,
    StorageUnavailableError,
    ValidationError,
)
from .db import Database, to_iso, utcnow
from .models import PUBLIC_COLUMNS, StoredObject

logger = logging.getLogger(__name__)

BLOB_SUFFIX = ".enc"

PlainSource = Union[BinaryIO, Iterable[bytes], bytes]


# ============================================================================
# Helper methods
# ============================================================================

def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _as_chunks(source: PlainSource, chunk_size: int) -> Iterator[bytes]:
    if isinstance(source, (bytes, bytearray)):
        for i in range(0, len(source), chunk_size):
            yield bytes(source[i:i + chunk_size])
    elif hasattr(source, "read"):
        yield from iter_chunks(source, chunk_size)
    else:
        yield from source


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


# ============================================================================
# Object store
# ============================================================================

class ObjectStore:
    """Encrypted objects: records in SQLite, ciphertext blobs on local disk.

    Blobs are named by a surrogate id, never by the display name.
    """

    def __init__(
        self,
        db: Database,
        blob_dir: Union[str, Path],
        subjects,
        *,
        algorithm: str = DEFAULT_ALGORITHM,
        chunk_size: int = CHUNK_SIZE,
        clock=utcnow,
    ):
        self.db = db
        self.blob_dir = _ensure_dir(Path(blob_dir))
        self.subjects = subjects
        self.algorithm = algorithm
        self.chunk_size = chunk_size
        self.clock = clock

    # ------------------------------------------------------------------ create

    def create(
        self,
        owner: str,
        filename: str,
        content_type: str,
        size: int,
        source: PlainSource,
    ) -> StoredObject:
        """Encrypt `source` into a new object owned by `owner`.

        Quota is reserved before any bytes are written. On any failure the
        temp blob is removed and the reservation released.
        """
        filename = (filename or "").strip()
        if not filename:
            raise ValidationError("filename cannot be empty", field="filename")
        if filename in (".", "..") or any(c in filename for c in ("/", "\\", "\0")):
            raise ValidationError("filename must not contain path components", field="filename")
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ValidationError("declared size must be a non-negative integer", field="size")
        content_type = content_type or "application/octet-stream"

        if not self.subjects.reserve_quota(owner, size):
            subject = self.subjects.get(owner)
            if subject is None:
                raise NotFoundError("Owner not found", resource="subject", resource_id=owner)
            raise QuotaExceededError(
                "Storage quota exceeded",
                requested=size,
                available=subject.storage_available,
                actor={"type": "subject", "id": owner},
            )

        material = generate_material(self.algorithm)
        stored_name = f"{uuid.uuid4().hex}{BLOB_SUFFIX}"
        final_path = self.blob_dir / stored_name
        tmp_path = None
        committed = False
        try:
            fd, tmp = tempfile.mkstemp(prefix=".upload.", suffix=".tmp", dir=str(self.blob_dir))
            tmp_path = Path(tmp)
            written = 0
            with os.fdopen(fd, "wb") as fh:
                def counted():
                    nonlocal written
                    for chunk in _as_chunks(source, self.chunk_size):
                        written += len(chunk)
                        yield chunk
                for block in encrypt_stream(counted(), material):
                    fh.write(block)
                fh.flush()
                os.fsync(fh.fileno())
            if written != size:
                raise ValidationError(
                    f"declared size {size} does not match streamed size {written}",
                    field="size",
                )
            os.replace(tmp_path, final_path)
            tmp_path = None

            entry = StoredObject.new(
                owner=owner,
                filename=filename,
                content_type=content_type,
                size=size,
                storage_path=str(final_path),
                stored_name=stored_name,
                encryption=material,
                created_at=self.clock(),
            )
            with self.db.connection() as conn:
                conn.execute(
                    "INSERT INTO objects (object_id, owner, filename, content_type, size, "
                    "storage_path, stored_name, algorithm, enc_key, enc_nonce, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (entry.object_id, owner, filename, content_type, size, str(final_path),
                     stored_name, material.algorithm, material.key, material.nonce,
                     to_iso(entry.created_at)),
                )
            committed = True
        except OSError as e:
            raise StorageUnavailableError(f"Failed to write encrypted blob: {e}", cause=e)
        finally:
            if not committed:
                if tmp_path is not None:
                    _unlink_quietly(tmp_path)
                _unlink_quietly(final_path)
                self.subjects.release_quota(owner, size)

        logger.info("Stored object %s (%d bytes, %s) for %s",
                    entry.object_id, size, material.algorithm, owner)
        return entry.without_secrets()

    # ------------------------------------------------------------------- reads

    def _fetch(self, object_id: str, with_material: bool = False) -> Optional[StoredObject]:
        columns = PUBLIC_COLUMNS + (", enc_key, enc_nonce" if with_material else "")
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT {columns} FROM objects WHERE object_id = ?", (object_id,)
            ).fetchone()
        return StoredObject.from_row(row) if row else None

    def find(self, object_id: str) -> Optional[StoredObject]:
        """Record lookup including soft-deleted objects; no ownership check."""
        return self._fetch(object_id)

    def resolve(self, object_id: str) -> StoredObject:
        """Live object without an ownership check (grant-mediated access)."""
        entry = self._fetch(object_id)
        if entry is None or entry.deleted:
            raise NotFoundError("Object not found", resource="object", resource_id=object_id)
        return entry

    def get(self, object_id: str, requester: Optional[str],
            admin_override: bool = False) -> StoredObject:
        entry = self.resolve(object_id)
        ensure_owner(entry.owner, requester, admin_override, resource="object")
        return entry

    def list(self, owner: str, *, limit: int = 50, skip: int = 0) -> List[StoredObject]:
        """Non-deleted objects for `owner`, newest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT {PUBLIC_COLUMNS} FROM objects WHERE owner = ? AND deleted = 0 "
                "ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (owner, limit, skip),
            ).fetchall()
        return [StoredObject.from_row(r) for r in rows]

    def list_all(self, *, limit: int = 50, skip: int = 0,
                 owner: Optional[str] = None) -> Tuple[List[StoredObject], int]:
        """Store-wide listing for admins. Returns (objects, total)."""
        where = "deleted = 0"
        params: list = []
        if owner:
            where += " AND owner = ?"
            params.append(owner)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT {PUBLIC_COLUMNS} FROM objects WHERE {where} "
                "ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (*params, limit, skip),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM objects WHERE {where}", params
            ).fetchone()[0]
        return [StoredObject.from_row(r) for r in rows], total

    def verify_integrity(self, object_id: str) -> bool:
        entry = self._fetch(object_id)
        if entry is None:
            return False
        return Path(entry.storage_path).exists()

    def ensure_bytes_present(self, entry: StoredObject) -> None:
        if not Path(entry.storage_path).exists():
            raise IntegrityUnavailableError(
                "Object bytes missing from storage", object_id=entry.object_id
            )

    def open_decrypted_stream(self, object_id: str) -> Iterator[bytes]:
        """Open the blob now and return a generator of plaintext chunks.

        Existence and readability are checked eagerly so that callers get
        ``IntegrityUnavailableError`` before any response is started.
        """
        entry = self._fetch(object_id, with_material=True)
        if entry is None or entry.deleted:
            raise NotFoundError("Object not found", resource="object", resource_id=object_id)
        try:
            fh = open(entry.storage_path, "rb")
        except FileNotFoundError as e:
            raise IntegrityUnavailableError(
                "Object bytes missing from storage", object_id=object_id, cause=e
            )
        except OSError as e:
            raise StorageUnavailableError(f"Cannot open object blob: {e}", cause=e)
        return self._stream(fh, entry)

    def _stream(self, fh: BinaryIO, entry: StoredObject) -> Iterator[bytes]:
        with fh:
            yield from decrypt_stream(iter_chunks(fh, self.chunk_size), entry.encryption)

    # ---------------------------------------------------------------- deletion

    def soft_delete(self, object_id: str, requester: Optional[str],
                    admin_override: bool = False) -> StoredObject:
        """Deactivate the object's grants, mark it deleted, release quota,
        then unlink the bytes.

        Grants are deactivated in the same transaction that marks the
        object deleted, so any validate after commit sees them inactive.
        """
        entry = self.get(object_id, requester, admin_override)
        deactivated = self._mark_deleted(entry)
        if deactivated is None:
            raise NotFoundError("Object not found", resource="object", resource_id=object_id)
        self._unlink_blob(entry)
        logger.info("Soft-deleted object %s (%d grants deactivated)", object_id, deactivated)
        return self._fetch(object_id)

    def soft_delete_orphan(self, object_id: str) -> bool:
        """Sweeper path: soft-delete only if the object still has no active grant."""
        entry = self._fetch(object_id)
        if entry is None or entry.deleted:
            return False
        if self._mark_deleted(entry, require_orphan=True) is None:
            return False
        self._unlink_blob(entry)
        logger.info("Reclaimed orphaned object %s (%s)", object_id, entry.filename)
        return True

    def _mark_deleted(self, entry: StoredObject, require_orphan: bool = False) -> Optional[int]:
        """Returns the number of grants deactivated, or None if nothing changed."""
        now = to_iso(self.clock())
        orphan_clause = ""
        params = [now, entry.object_id]
        if require_orphan:
            orphan_clause = (" AND NOT EXISTS (SELECT 1 FROM grants "
                             "WHERE grants.object_id = objects.object_id AND grants.active = 1)")
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE objects SET deleted = 1, deleted_at = ? "
                f"WHERE object_id = ? AND deleted = 0{orphan_clause}",
                params,
            )
            if cur.rowcount != 1:
                return None
            grants = conn.execute(
                "UPDATE grants SET active = 0, deactivated_at = ?, "
                "deactivation_reason = 'object_deleted', updated_at = ? "
                "WHERE object_id = ? AND active = 1",
                (now, now, entry.object_id),
            )
            self.subjects.release_quota(entry.owner, entry.size, conn=conn)
            return grants.rowcount

    def _unlink_blob(self, entry: StoredObject) -> None:
        try:
            Path(entry.storage_path).unlink(missing_ok=True)
        except OSError as e:
            # Record is already deleted; purge retries the unlink later.
            logger.warning("Could not remove blob for %s: %s", entry.object_id, e)

    def purge(self, object_id: str) -> bool:
        """Physically remove bytes and record of a soft-deleted object.

        Idempotent: missing bytes or a missing record are not errors.
        """
        entry = self._fetch(object_id)
        if entry is None:
            return False
        if not entry.deleted:
            raise ValidationError("Only soft-deleted objects can be purged", field="object_id")
        try:
            Path(entry.storage_path).unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot remove blob: {e}", cause=e)
        with self.db.connection() as conn:
            cur = conn.execute(
                "DELETE FROM objects WHERE object_id = ? AND deleted = 1", (object_id,)
            )
        logger.info("Purged object %s", object_id)
        return cur.rowcount == 1

    # ----------------------------------------------------------- sweep queries

    def find_orphans(self, created_before: Optional[str] = None) -> List[str]:
        """Ids of live objects with zero active grants."""
        sql = ("SELECT object_id FROM objects o WHERE o.deleted = 0 AND NOT EXISTS "
               "(SELECT 1 FROM grants g WHERE g.object_id = o.object_id AND g.active = 1)")
        params: list = []
        if created_before:
            sql += " AND o.created_at <= ?"
            params.append(created_before)
        with self.db.connection() as conn:
            return [r[0] for r in conn.execute(sql, params).fetchall()]

    def find_soft_deleted(self) -> List[str]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT object_id FROM objects WHERE deleted = 1 ORDER BY deleted_at"
            ).fetchall()
        return [r[0] for r in rows]
