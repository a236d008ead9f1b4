"""
ShareVault: composition root wiring the store, grants, ledger and sweeper
from one ``Settings`` object.

Management calls take the requesting subject id; admins bypass the
ownership check automatically.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from accounts.hashing import SimpleHasher
from accounts.manager import AccountManager
from accounts.models import ROLE_USER, Subject
from accounts.storage import SQLiteSubjectStore
from audit.ledger import AuditLedger
from config import Settings
from errors import ValidationError
from reclamation.sweeper import SweepReport, Sweeper
from sharing.download import DownloadResult, DownloadService
from sharing.models import AccessContext, DeactivationReason, Grant, GrantPolicy
from sharing.service import GrantService
from storage.db import Database, utcnow
from storage.file_manager import ObjectStore, PlainSource
from storage.models import StoredObject

logger = logging.getLogger(__name__)


class ShareVault:
    def __init__(self, settings: Optional[Settings] = None, clock=utcnow):
        self.settings = settings or Settings.from_env()
        self.settings.ensure_dirs()
        self.clock = clock

        self.db = Database(self.settings.db_path, timeout=self.settings.storage_timeout)
        self.db.init_schema()

        self.subjects = SQLiteSubjectStore(self.db)
        self.accounts = AccountManager(self.subjects, self.settings.storage_quota)
        self.hasher = SimpleHasher()
        self.objects = ObjectStore(
            self.db,
            self.settings.blob_dir,
            self.subjects,
            algorithm=self.settings.cipher_algorithm,
            chunk_size=self.settings.chunk_size,
            clock=clock,
        )
        self.grants = GrantService(
            self.db,
            self.objects,
            self.accounts,
            self.hasher,
            default_limit=self.settings.default_download_limit,
            default_hours=self.settings.default_expiry_hours,
            max_limit=self.settings.max_download_limit,
            clock=clock,
        )
        self.ledger = AuditLedger(self.db, clock=clock)
        self.downloads = DownloadService(self.grants, self.objects, self.ledger)
        self.sweeper = Sweeper(
            self.grants,
            self.objects,
            interval=self.settings.sweep_interval,
            purge_interval=self.settings.purge_interval,
            initial_delay=self.settings.sweep_initial_delay,
            orphan_grace_seconds=self.settings.orphan_grace_seconds,
            clock=clock,
        )

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        self.sweeper.stop()

    def _admin(self, requester: Optional[str]) -> bool:
        return self.accounts.is_admin(requester)

    # ==================== Subjects ====================

    def register(self, email: str, display_name: str = "", role: str = ROLE_USER,
                 storage_quota: Optional[int] = None) -> Subject:
        return self.accounts.register(email, display_name, role=role,
                                      storage_quota=storage_quota)

    # ==================== Objects ====================

    def upload(
        self,
        owner: str,
        filename: str,
        source: PlainSource,
        size: Optional[int] = None,
        content_type: str = "application/octet-stream",
        share: Optional[GrantPolicy] = None,
    ) -> Tuple[StoredObject, Optional[Grant]]:
        """Store an object and, if `share` is given, create its first link."""
        if size is None:
            if not isinstance(source, (bytes, bytearray)):
                raise ValidationError("size is required for streamed sources", field="size")
            size = len(source)
        entry = self.objects.create(owner, filename, content_type, size, source)
        grant = None
        if share is not None:
            grant = self.grants.create(entry.object_id, owner, share)
        return entry, grant

    def list_objects(self, requester: str, limit: int = 50, skip: int = 0) -> List[StoredObject]:
        return self.objects.list(requester, limit=limit, skip=skip)

    def list_all_objects(self, limit: int = 50, skip: int = 0) -> Tuple[List[StoredObject], int]:
        return self.objects.list_all(limit=limit, skip=skip)

    def delete(self, object_id: str, requester: str) -> StoredObject:
        return self.objects.soft_delete(object_id, requester, self._admin(requester))

    # ==================== Share links ====================

    def share(self, object_id: str, requester: str,
              policy: Optional[GrantPolicy] = None) -> Grant:
        return self.grants.create(object_id, requester, policy, self._admin(requester))

    def links(self, requester: str, object_id: Optional[str] = None,
              active_only: bool = False) -> List[Grant]:
        if object_id:
            return self.grants.list_for_object(object_id, requester, self._admin(requester))
        return self.grants.list_for_subject(requester, active_only=active_only)

    def revoke(self, grant_id: str, requester: str) -> Grant:
        admin = self._admin(requester)
        grant = self.grants.get(grant_id, requester, admin)
        reason = (DeactivationReason.ADMIN if admin and grant.created_by != requester
                  else DeactivationReason.MANUAL)
        return self.grants.deactivate(grant_id, requester, reason, admin)

    def update_link(self, grant_id: str, requester: str, **changes) -> Grant:
        return self.grants.update(grant_id, requester, changes, self._admin(requester))

    def share_url(self, grant: Grant) -> str:
        return grant.share_url(self.settings.frontend_url)

    # ==================== Downloads ====================

    def download(self, token: str, context: Optional[AccessContext] = None) -> DownloadResult:
        return self.downloads.download(token, context)

    def link_info(self, token: str, context: Optional[AccessContext] = None) -> Dict[str, Any]:
        return self.downloads.info(token, context)

    def owner_download(self, object_id: str, requester: str,
                       context: Optional[AccessContext] = None) -> DownloadResult:
        return self.downloads.owner_download(object_id, requester, context,
                                             self._admin(requester))

    # ==================== Reclamation ====================

    def sweep(self, purge: bool = False) -> SweepReport:
        return self.sweeper.run_once(purge=purge)

    def start_sweeper(self) -> None:
        self.sweeper.start()

    # ==================== Reporting ====================

    def stats(self, subject_id: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "links": self.grants.stats(subject_id),
            "downloads": self.ledger.stats(subject_id=subject_id),
        }
        if subject_id:
            data["storage"] = self.accounts.storage_info(subject_id)
        return data
