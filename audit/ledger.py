"""
Append-only audit ledger of access attempts.

Writing never fails the surrounding operation: errors are logged and
swallowed here so a download is never refused because its audit row could
not be stored. The table itself rejects UPDATE and DELETE.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from storage.db import Database, to_iso, utcnow
from .models import AuditRecord, DOWNLOAD_TYPES

logger = logging.getLogger(__name__)


class AuditLedger:
    def __init__(self, db: Database, clock=utcnow):
        self.db = db
        self.clock = clock

    def record(self, attempt: AuditRecord) -> Optional[str]:
        """Append one record. Returns its id, or None if the write failed."""
        try:
            if attempt.download_type not in DOWNLOAD_TYPES:
                raise ValueError(f"unknown download_type '{attempt.download_type}'")
            loc = attempt.location or {}
            snap = attempt.snapshot or {}
            with self.db.connection() as conn:
                conn.execute(
                    "INSERT INTO audit_log (record_id, object_id, grant_id, subject_id, "
                    "ip_address, user_agent, referrer, country, city, region, success, "
                    "error_code, error_message, download_type, snapshot_name, snapshot_size, "
                    "snapshot_content_type, accessed_at, duration_ms) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (attempt.record_id, attempt.object_id, attempt.grant_id,
                     attempt.subject_id, attempt.ip_address or "", attempt.user_agent or "",
                     attempt.referrer or "", loc.get("country"), loc.get("city"),
                     loc.get("region"), int(attempt.success), attempt.error_code,
                     attempt.error_message, attempt.download_type, snap.get("name"),
                     snap.get("size"), snap.get("content_type"),
                     to_iso(attempt.accessed_at), attempt.duration_ms),
                )
        except Exception as e:
            logger.error("Failed to write audit record for object %s: %s",
                         attempt.object_id, e)
            return None
        return attempt.record_id

    # ----------------------------------------------------------------- queries

    @staticmethod
    def _filters(object_id=None, subject_id=None, grant_id=None, success_only=False,
                 start: Optional[datetime] = None, end: Optional[datetime] = None):
        clauses, params = [], []
        if object_id:
            clauses.append("object_id = ?")
            params.append(object_id)
        if subject_id:
            clauses.append("subject_id = ?")
            params.append(subject_id)
        if grant_id:
            clauses.append("grant_id = ?")
            params.append(grant_id)
        if success_only:
            clauses.append("success = 1")
        if start:
            clauses.append("accessed_at >= ?")
            params.append(to_iso(start))
        if end:
            clauses.append("accessed_at <= ?")
            params.append(to_iso(end))
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    def _history(self, where: str, params: list, limit: int, skip: int) -> List[AuditRecord]:
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY accessed_at DESC LIMIT ? OFFSET ?",
                (*params, limit, skip),
            ).fetchall()
        return [AuditRecord.from_row(r) for r in rows]

    def history_for_object(self, object_id: str, *, success_only: bool = False,
                           limit: int = 100, skip: int = 0) -> List[AuditRecord]:
        where, params = self._filters(object_id=object_id, success_only=success_only)
        return self._history(where, params, limit, skip)

    def history_for_subject(self, subject_id: str, *, success_only: bool = False,
                            limit: int = 100, skip: int = 0) -> List[AuditRecord]:
        where, params = self._filters(subject_id=subject_id, success_only=success_only)
        return self._history(where, params, limit, skip)

    def stats(self, **filters) -> Dict[str, Any]:
        where, params = self._filters(**filters)
        with self.db.connection() as conn:
            total, ok, unique_ips, avg = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(success), 0), COUNT(DISTINCT ip_address), "
                f"AVG(duration_ms) FROM audit_log {where}",
                params,
            ).fetchone()
        return {
            "total": total,
            "successful": ok,
            "failed": total - ok,
            "unique_ips": unique_ips,
            "avg_duration_ms": round(avg, 2) if avg is not None else 0,
            "success_rate": round(ok / total * 100, 2) if total else 0,
        }

    def daily_stats(self, days: int = 30, **filters) -> List[Dict[str, Any]]:
        """Counts per UTC day over the last `days` days, oldest first."""
        now = self.clock()
        start = (now - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)
        where, params = self._filters(start=start, **filters)
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT substr(accessed_at, 1, 10) AS day, COUNT(*), COALESCE(SUM(success), 0) "
                f"FROM audit_log {where} GROUP BY day ORDER BY day",
                params,
            ).fetchall()
        return [{"date": r[0], "count": r[1], "success_count": r[2]} for r in rows]

    def top_objects(self, limit: int = 10, start: Optional[datetime] = None,
                    end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Most downloaded objects by successful attempts, using the audit snapshot."""
        where, params = self._filters(success_only=True, start=start, end=end)
        where += " AND object_id IS NOT NULL" if where else "WHERE object_id IS NOT NULL"
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT object_id, COUNT(*) AS downloads, COUNT(DISTINCT subject_id), "
                "MAX(accessed_at), MAX(snapshot_name), MAX(snapshot_size), "
                f"MAX(snapshot_content_type) FROM audit_log {where} "
                "GROUP BY object_id ORDER BY downloads DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [
            {"object_id": r[0], "download_count": r[1], "unique_downloaders": r[2],
             "last_download": r[3], "name": r[4], "size": r[5], "content_type": r[6]}
            for r in rows
        ]

    def by_country(self, object_id: Optional[str] = None) -> List[Dict[str, Any]]:
        where, params = self._filters(object_id=object_id)
        where += " AND country IS NOT NULL" if where else "WHERE country IS NOT NULL"
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT country, COUNT(*) AS n FROM audit_log {where} "
                "GROUP BY country ORDER BY n DESC",
                params,
            ).fetchall()
        return [{"country": r[0], "count": r[1]} for r in rows]
