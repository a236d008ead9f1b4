"""
Download path: validate -> bytes present -> consume -> decrypt, with every
attempt written to the audit ledger whatever its outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional

from audit.ledger import AuditLedger
from audit.models import AuditRecord
from errors import ShareVaultError
from storage.file_manager import ObjectStore
from storage.models import StoredObject
from .models import AccessContext, Grant
from .service import GrantService

logger = logging.getLogger(__name__)

Notifier = Callable[[Grant, StoredObject, AccessContext], None]


@dataclass
class DownloadResult:
    object: StoredObject
    stream: Iterator[bytes]
    grant: Optional[Grant] = None

    @property
    def filename(self) -> str:
        return self.object.filename

    def read_all(self) -> bytes:
        return b"".join(self.stream)


class DownloadService:
    def __init__(
        self,
        grants: GrantService,
        objects: ObjectStore,
        ledger: AuditLedger,
        notifier: Optional[Notifier] = None,
    ):
        self.grants = grants
        self.objects = objects
        self.ledger = ledger
        self.notifier = notifier

    def _audit(self, context: AccessContext, *, success: bool, download_type: str,
               entry: Optional[StoredObject] = None, grant: Optional[Grant] = None,
               error: Optional[ShareVaultError] = None,
               started: Optional[float] = None) -> None:
        duration = round((time.monotonic() - started) * 1000, 2) if started else None
        self.ledger.record(AuditRecord(
            success=success,
            object_id=entry.object_id if entry else (grant.object_id if grant else None),
            grant_id=grant.grant_id if grant else None,
            subject_id=context.subject_id,
            ip_address=context.address or "",
            user_agent=context.user_agent,
            referrer=context.referrer,
            location=context.location,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            download_type=download_type,
            snapshot=entry.snapshot() if entry else {},
            duration_ms=duration,
            accessed_at=self.grants.clock(),
        ))

    def download(self, token: str, context: Optional[AccessContext] = None) -> DownloadResult:
        """Redeem one access unit of a share link and return the plaintext stream."""
        context = context or AccessContext()
        started = time.monotonic()
        grant = entry = None
        try:
            grant, entry = self.grants.validate(token, context)
            # a missing blob must not cost the downloader a slot
            self.objects.ensure_bytes_present(entry)
            grant = self.grants.consume(grant.grant_id, context.address)
            stream = self.objects.open_decrypted_stream(entry.object_id)
        except ShareVaultError as e:
            logger.log(e.log_level, "Share download denied (%s) from %s", e.code,
                       context.address or "unknown")
            if grant is None:
                grant, entry = self._resolve_for_audit(token=token)
            self._audit(context, success=False, download_type="share_link",
                        entry=entry, grant=grant, error=e, started=started)
            raise

        self._audit(context, success=True, download_type="share_link",
                    entry=entry, grant=grant, started=started)
        if grant.notify_on_download:
            self._notify(grant, entry, context)
        stream = self._watch_stream(stream, context, download_type="share_link",
                                    entry=entry, grant=grant)
        return DownloadResult(object=entry, stream=stream, grant=grant)

    def info(self, token: str, context: Optional[AccessContext] = None) -> Dict[str, Any]:
        """Preview a share link without consuming it."""
        grant, entry = self.grants.validate(token, context or AccessContext())
        now = self.grants.clock()
        remaining = grant.remaining_downloads
        return {
            "filename": entry.filename,
            "size": entry.size,
            "size_formatted": entry.size_formatted,
            "content_type": entry.content_type,
            "mode": grant.mode.value,
            "remaining_downloads": None if remaining == float("inf") else remaining,
            "expires_at": grant.to_dict(now)["expires_at"],
            "expires_in": grant.expires_in(now),
            "custom_message": grant.custom_message,
            "requires_password": grant.is_password_protected,
        }

    def owner_download(self, object_id: str, requester: Optional[str],
                       context: Optional[AccessContext] = None,
                       admin_override: bool = False) -> DownloadResult:
        """Direct download by the owner (or an admin); audited without a grant."""
        context = context or AccessContext(subject_id=requester)
        started = time.monotonic()
        entry = None
        try:
            entry = self.objects.get(object_id, requester, admin_override)
            stream = self.objects.open_decrypted_stream(object_id)
        except ShareVaultError as e:
            if entry is None:
                _, entry = self._resolve_for_audit(object_id=object_id)
            self._audit(context, success=False, download_type="direct",
                        entry=entry, error=e, started=started)
            raise
        self._audit(context, success=True, download_type="direct",
                    entry=entry, started=started)
        stream = self._watch_stream(stream, context, download_type="direct", entry=entry)
        return DownloadResult(object=entry, stream=stream)

    def _watch_stream(self, stream: Iterator[bytes], context: AccessContext, *,
                      download_type: str, entry: StoredObject,
                      grant: Optional[Grant] = None) -> Iterator[bytes]:
        """Pass chunks through; a decrypt failure mid-stream gets its own audit row."""
        try:
            yield from stream
        except ShareVaultError as e:
            logger.log(e.log_level, "Download of %s failed mid-stream (%s)",
                       entry.object_id, e.code)
            self._audit(context, success=False, download_type=download_type,
                        entry=entry, grant=grant, error=e)
            raise

    def _resolve_for_audit(self, token: Optional[str] = None,
                           object_id: Optional[str] = None):
        """Best-effort ids for a failed attempt. Never raises."""
        grant = entry = None
        try:
            if token:
                grant = self.grants.find_by_token(token)
                object_id = grant.object_id if grant else None
            if object_id:
                entry = self.objects.find(object_id)
        except ShareVaultError as e:
            logger.debug("Could not resolve ids for audit: %s", e)
        return grant, entry

    def _notify(self, grant: Grant, entry: StoredObject, context: AccessContext) -> None:
        if self.notifier is None:
            logger.info("Download of %s via link %s... (notify %s)", entry.object_id,
                        grant.token[:8], grant.notification_email or grant.created_by)
            return
        try:
            self.notifier(grant, entry, context)
        except Exception as e:
            logger.error("Download notification failed for %s: %s", grant.grant_id, e)
