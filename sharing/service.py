"""
Share-link service: the access grant state machine.

States: active-usable, active-expired, active-limited, inactive (terminal).
Every transition is a single conditional statement against the store, so
concurrent requests and the sweeper can never resurrect a grant or push the
consumed count past its limit.
"""

from __future__ import annotations

from datetime import datetime
import ipaddress
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from accounts.authorization import ensure_owner
from accounts.hashing import SimpleHasher
from accounts.manager import AccountManager
from errors import (
    AccessDeniedError,
    AuthRequiredError,
    ExpiredError,
    InvalidPasswordError,
    LimitReachedError,
    NotFoundError,
    PasswordRequiredError,
    ValidationError,
)
from storage.db import Database, to_iso, utcnow
from storage.file_manager import ObjectStore
from storage.models import StoredObject
from .models import (
    AccessContext,
    AccessMode,
    DeactivationReason,
    Grant,
    GrantPolicy,
    generate_token,
    new_grant_id,
    validate_limit,
    validate_message,
)

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({
    "download_limit",
    "expires_at",
    "custom_message",
    "notify_on_download",
    "notification_email",
    "password",
})

_CONSUME_SQL = """
    UPDATE grants SET
        consumed_count = consumed_count + 1,
        last_accessed_at = :now,
        last_access_ip = COALESCE(:ip, last_access_ip),
        updated_at = :now,
        active = CASE WHEN download_limit IS NOT NULL
                           AND consumed_count + 1 >= download_limit
                      THEN 0 ELSE 1 END,
        deactivated_at = CASE WHEN download_limit IS NOT NULL
                                   AND consumed_count + 1 >= download_limit
                              THEN :now ELSE deactivated_at END,
        deactivation_reason = CASE WHEN download_limit IS NOT NULL
                                        AND consumed_count + 1 >= download_limit
                                   THEN 'limit_reached' ELSE deactivation_reason END
    WHERE grant_id = :grant_id
      AND active = 1
      AND expires_at >= :now
      AND (download_limit IS NULL OR consumed_count < download_limit)
"""


def _short(token: str) -> str:
    return f"{token[:8]}..."


def _canon_ip(address: Optional[str]) -> Optional[str]:
    if not address:
        return None
    try:
        return str(ipaddress.ip_address(address.strip()))
    except ValueError:
        return address.strip()


class GrantService:
    """Creates, validates, consumes and retires share links."""

    def __init__(
        self,
        db: Database,
        objects: ObjectStore,
        accounts: AccountManager,
        hasher: Optional[SimpleHasher] = None,
        *,
        default_limit: int = 10,
        default_hours: float = 24.0,
        max_limit: int = 1000,
        clock=utcnow,
    ):
        self.db = db
        self.objects = objects
        self.accounts = accounts
        self.hasher = hasher or SimpleHasher()
        self.default_limit = default_limit
        self.default_hours = default_hours
        self.max_limit = max_limit
        self.clock = clock

    # ------------------------------------------------------------------ create

    def create(self, object_id: str, owner: str, policy: Optional[GrantPolicy] = None,
               admin_override: bool = False) -> Grant:
        """Create an active grant for an object the creator owns."""
        self.objects.get(object_id, owner, admin_override)
        now = self.clock()
        p = (policy or GrantPolicy()).normalized(
            now=now,
            default_limit=self.default_limit,
            default_hours=self.default_hours,
            max_limit=self.max_limit,
        )
        grant = Grant(
            grant_id=new_grant_id(),
            token=generate_token(),
            object_id=object_id,
            created_by=owner,
            mode=p.mode,
            download_limit=p.download_limit,
            expires_at=p.expires_at,
            password_hash=self.hasher.hash(p.password) if p.password else None,
            allowed_emails=p.allowed_emails,
            allowed_ips=p.allowed_ips,
            requires_auth=p.requires_auth,
            custom_message=p.custom_message,
            notify_on_download=p.notify_on_download,
            notification_email=p.notification_email,
            created_at=now,
            updated_at=now,
        )
        with self.db.connection() as conn:
            inserted = conn.execute(
                "INSERT INTO grants (grant_id, token, object_id, created_by, mode, "
                "download_limit, consumed_count, expires_at, password_hash, allowed_emails, "
                "allowed_ips, requires_auth, custom_message, notify_on_download, "
                "notification_email, active, created_at, updated_at) "
                "SELECT ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ? "
                "WHERE EXISTS (SELECT 1 FROM objects WHERE object_id = ? AND deleted = 0)",
                (grant.grant_id, grant.token, object_id, owner, grant.mode.value,
                 grant.download_limit, to_iso(grant.expires_at), grant.password_hash,
                 json.dumps(grant.allowed_emails), json.dumps(grant.allowed_ips),
                 int(grant.requires_auth), grant.custom_message,
                 int(grant.notify_on_download), grant.notification_email,
                 to_iso(now), to_iso(now), object_id),
            ).rowcount
        if inserted != 1:
            # deleted between the ownership check and the insert
            raise NotFoundError("Object not found", resource="object", resource_id=object_id)
        logger.info("Created %s share link %s for object %s (expires %s)",
                    grant.mode.value, _short(grant.token), object_id, to_iso(grant.expires_at))
        return grant

    # ------------------------------------------------------------------- reads

    def _fetch(self, grant_id: str) -> Optional[Grant]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM grants WHERE grant_id = ?", (grant_id,)).fetchone()
        return Grant.from_row(row) if row else None

    def _fetch_active_by_token(self, token: str) -> Optional[Grant]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM grants WHERE token = ? AND active = 1", (token,)
            ).fetchone()
        return Grant.from_row(row) if row else None

    def find_by_token(self, token: str) -> Optional[Grant]:
        """Any grant with this token, whatever its state."""
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM grants WHERE token = ?", (token,)).fetchone()
        return Grant.from_row(row) if row else None

    def get(self, grant_id: str, requester: Optional[str], admin_override: bool = False) -> Grant:
        grant = self._fetch(grant_id)
        if grant is None:
            raise NotFoundError("Share link not found", resource="grant", resource_id=grant_id)
        ensure_owner(grant.created_by, requester, admin_override, resource="share link")
        return grant

    def list_for_object(self, object_id: str, requester: Optional[str],
                        admin_override: bool = False) -> List[Grant]:
        """Active grants of an object, newest first."""
        self.objects.get(object_id, requester, admin_override)
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM grants WHERE object_id = ? AND active = 1 "
                "ORDER BY created_at DESC",
                (object_id,),
            ).fetchall()
        return [Grant.from_row(r) for r in rows]

    def list_for_subject(self, subject_id: str, *, active_only: bool = False,
                         limit: int = 100, skip: int = 0) -> List[Grant]:
        sql = "SELECT * FROM grants WHERE created_by = ?"
        if active_only:
            sql += " AND active = 1"
        sql += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        with self.db.connection() as conn:
            rows = conn.execute(sql, (subject_id, limit, skip)).fetchall()
        return [Grant.from_row(r) for r in rows]

    def list_all(self, *, active_only: bool = False, limit: int = 100,
                 skip: int = 0) -> Tuple[List[Grant], int]:
        where = "WHERE active = 1" if active_only else ""
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM grants {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (limit, skip),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) FROM grants {where}").fetchone()[0]
        return [Grant.from_row(r) for r in rows], total

    def stats(self, subject_id: Optional[str] = None) -> Dict[str, Any]:
        sql = ("SELECT COUNT(*), COALESCE(SUM(active), 0), COALESCE(SUM(consumed_count), 0), "
               "AVG(consumed_count) FROM grants")
        params: tuple = ()
        if subject_id:
            sql += " WHERE created_by = ?"
            params = (subject_id,)
        with self.db.connection() as conn:
            total, active, downloads, avg = conn.execute(sql, params).fetchone()
        return {
            "total_links": total,
            "active_links": active,
            "total_downloads": downloads,
            "avg_downloads_per_link": round(avg or 0, 2),
        }

    # -------------------------------------------------------------- validation

    def validate(self, token: str, context: Optional[AccessContext] = None
                 ) -> Tuple[Grant, StoredObject]:
        """Run every gate for `token` without consuming an access unit.

        Expiry is checked before the limit, so a grant that is both expired
        and used up reports ``ExpiredError``.
        """
        context = context or AccessContext()
        actor = {"type": "subject" if context.subject_id else "anonymous",
                 "id": context.subject_id or (context.address or "unknown")}

        grant = self._fetch_active_by_token(token) if token else None
        if grant is None:
            raise NotFoundError("Share link not found or inactive", resource="grant", actor=actor)

        now = self.clock()
        if grant.is_expired(now):
            self._deactivate_if_active(grant.grant_id, DeactivationReason.EXPIRED,
                                       expired_before=to_iso(now))
            raise ExpiredError("Share link has expired",
                               expires_at=to_iso(grant.expires_at), actor=actor)

        if grant.is_limit_reached:
            self._deactivate_if_active(grant.grant_id, DeactivationReason.LIMIT_REACHED,
                                       limit_used_up=True)
            raise LimitReachedError("Download limit reached",
                                    limit=grant.download_limit, actor=actor)

        if grant.is_password_protected:
            if not context.secret:
                raise PasswordRequiredError("Password required", actor=actor)
            if not self.hasher.verify(grant.password_hash, context.secret):
                raise InvalidPasswordError("Invalid password", actor=actor)

        if grant.allowed_ips:
            address = _canon_ip(context.address)
            if not address or address not in grant.allowed_ips:
                raise AccessDeniedError("Access denied: address not allowed",
                                        reason="ip_not_allowed", actor=actor)

        if grant.requires_auth and not context.subject_id:
            raise AuthRequiredError("Authentication required", actor=actor)

        if grant.allowed_emails:
            email = self.accounts.email_of(context.subject_id)
            if not email or email.lower() not in grant.allowed_emails:
                raise AccessDeniedError("Access denied: email not allowed",
                                        reason="email_not_allowed", actor=actor)

        entry = self.objects.resolve(grant.object_id)
        return grant, entry

    # ------------------------------------------------------------- consumption

    def consume(self, grant_id: str, address: Optional[str] = None) -> Grant:
        """Atomically use one access unit.

        Increments the count only if the grant is still active, unexpired
        and under its limit; the same statement retires the grant when the
        new count reaches the limit.
        """
        now = to_iso(self.clock())
        # read back inside the write lock so the count returned is this call's own
        with self.db.transaction() as conn:
            cur = conn.execute(_CONSUME_SQL, {"now": now, "ip": address, "grant_id": grant_id})
            changed = cur.rowcount
            row = conn.execute("SELECT * FROM grants WHERE grant_id = ?", (grant_id,)).fetchone()
        grant = Grant.from_row(row) if row else None
        if changed == 1:
            logger.debug("Consumed share link %s (%d/%s)", _short(grant.token),
                         grant.consumed_count, grant.download_limit or "unlimited")
            return grant
        self._raise_consume_failure(grant)

    def _raise_consume_failure(self, grant: Optional[Grant]) -> None:
        if grant is None:
            raise NotFoundError("Share link not found", resource="grant")
        if grant.active and grant.is_expired(self.clock()):
            self._deactivate_if_active(grant.grant_id, DeactivationReason.EXPIRED,
                                       expired_before=to_iso(self.clock()))
            raise ExpiredError("Share link has expired", expires_at=to_iso(grant.expires_at))
        if grant.is_limit_reached or grant.deactivation_reason == DeactivationReason.LIMIT_REACHED:
            raise LimitReachedError("Download limit reached", limit=grant.download_limit)
        if grant.deactivation_reason == DeactivationReason.EXPIRED:
            raise ExpiredError("Share link has expired", expires_at=to_iso(grant.expires_at))
        raise NotFoundError("Share link not found or inactive", resource="grant",
                            resource_id=grant.grant_id)

    # ------------------------------------------------------------- transitions

    def _deactivate_if_active(self, grant_id: str, reason: DeactivationReason,
                              expired_before: Optional[str] = None,
                              limit_used_up: bool = False) -> bool:
        """active -> inactive, at most once. Returns True if this call did it.

        ``expired_before`` and ``limit_used_up`` re-check the triggering
        condition in the same statement, so a concurrent update that extended
        the expiry or raised the limit is not overwritten.
        """
        now = to_iso(self.clock())
        sql = ("UPDATE grants SET active = 0, deactivated_at = ?, deactivation_reason = ?, "
               "updated_at = ? WHERE grant_id = ? AND active = 1")
        params = [now, reason.value, now, grant_id]
        if expired_before:
            sql += " AND expires_at < ?"
            params.append(expired_before)
        if limit_used_up:
            sql += " AND download_limit IS NOT NULL AND consumed_count >= download_limit"
        with self.db.connection() as conn:
            changed = conn.execute(sql, params).rowcount == 1
        if changed:
            logger.debug("Deactivated share link %s (%s)", grant_id, reason.value)
        return changed

    def deactivate(self, grant_id: str, requester: Optional[str],
                   reason: DeactivationReason = DeactivationReason.MANUAL,
                   admin_override: bool = False) -> Grant:
        """Retire a grant. Already-inactive grants are returned unchanged."""
        reason = DeactivationReason(reason)
        grant = self.get(grant_id, requester, admin_override)
        if self._deactivate_if_active(grant.grant_id, reason):
            logger.info("Share link %s deactivated by %s (%s)",
                        _short(grant.token), requester, reason.value)
        return self._fetch(grant_id)

    def expire(self, grant_id: str) -> bool:
        """Sweeper transition: retire one grant if it is still active and past expiry."""
        return self._deactivate_if_active(
            grant_id, DeactivationReason.EXPIRED, expired_before=to_iso(self.clock())
        )

    def find_expired_ids(self) -> List[str]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT grant_id FROM grants WHERE active = 1 AND expires_at < ?",
                (to_iso(self.clock()),),
            ).fetchall()
        return [r[0] for r in rows]

    def expire_stale(self) -> int:
        """Retire every active grant past its expiry. Returns how many this call retired."""
        return sum(1 for grant_id in self.find_expired_ids() if self.expire(grant_id))

    def update(self, grant_id: str, requester: Optional[str], changes: Dict[str, Any],
               admin_override: bool = False) -> Grant:
        """Change mutable settings of an active grant.

        Token, object reference, mode and consumed count are immutable.
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        grant = self.get(grant_id, requester, admin_override)
        if not grant.active:
            raise NotFoundError("Share link is no longer active", resource="grant",
                                resource_id=grant_id)

        now = self.clock()
        assignments: List[str] = []
        params: List[Any] = []
        guard = ""

        if "download_limit" in changes:
            if grant.mode != AccessMode.MULTIPLE:
                raise ValidationError("download_limit applies only to 'multiple' links",
                                      field="download_limit")
            limit = validate_limit(changes["download_limit"], self.max_limit)
            if limit < grant.consumed_count:
                raise ValidationError("download_limit cannot go below downloads already made",
                                      field="download_limit")
            assignments.append("download_limit = ?")
            params.append(limit)
            guard = " AND consumed_count <= ?"
        if "expires_at" in changes:
            expires_at = changes["expires_at"]
            if (not isinstance(expires_at, datetime) or expires_at.tzinfo is None
                    or expires_at <= now):
                raise ValidationError("expires_at must be a future, timezone-aware time",
                                      field="expires_at")
            assignments.append("expires_at = ?")
            params.append(to_iso(expires_at))
        if "custom_message" in changes:
            assignments.append("custom_message = ?")
            params.append(validate_message(changes["custom_message"]))
        if "notify_on_download" in changes:
            assignments.append("notify_on_download = ?")
            params.append(int(bool(changes["notify_on_download"])))
        if "notification_email" in changes:
            assignments.append("notification_email = ?")
            params.append(changes["notification_email"] or None)
        if "password" in changes:
            password = changes["password"]
            assignments.append("password_hash = ?")
            params.append(self.hasher.hash(password) if password else None)

        if not assignments:
            return grant

        assignments.append("updated_at = ?")
        params.append(to_iso(now))
        params.append(grant_id)
        if guard:
            params.append(changes["download_limit"])
        with self.db.connection() as conn:
            cur = conn.execute(
                f"UPDATE grants SET {', '.join(assignments)} "
                f"WHERE grant_id = ? AND active = 1{guard}",
                params,
            )
            changed = cur.rowcount
        if changed != 1:
            latest = self._fetch(grant_id)
            if latest is None or not latest.active:
                raise NotFoundError("Share link is no longer active", resource="grant",
                                    resource_id=grant_id)
            raise ValidationError("download_limit cannot go below downloads already made",
                                  field="download_limit")
        logger.info("Updated share link %s (%s)", _short(grant.token),
                    ", ".join(sorted(changes)))
        return self._fetch(grant_id)
