"""
Reclamation sweeper.

Pass order matters: stale grants are expired first so that objects whose
last grant just lapsed are reclaimed in the same run. Purging of
soft-deleted objects runs on its own interval. Every step goes through the
same conditional transitions the request path uses, so a sweep can run
alongside live traffic and only ever moves records toward their terminal
state.
"""

from dataclasses import dataclass
from datetime import timedelta
import logging
import threading
import time
from typing import Optional

from errors import StorageUnavailableError
from sharing.service import GrantService
from storage.db import to_iso, utcnow
from storage.file_manager import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    orphaned: int = 0
    purged: int = 0
    skipped: int = 0

    def __str__(self) -> str:
        return (f"expired={self.expired} orphaned={self.orphaned} "
                f"purged={self.purged} skipped={self.skipped}")


class Sweeper:
    def __init__(
        self,
        grants: GrantService,
        objects: ObjectStore,
        *,
        interval: float = 3600,
        purge_interval: float = 3600,
        initial_delay: float = 5.0,
        orphan_grace_seconds: float = 0,
        clock=utcnow,
    ):
        self.grants = grants
        self.objects = objects
        self.interval = interval
        self.purge_interval = purge_interval
        self.initial_delay = initial_delay
        self.orphan_grace_seconds = orphan_grace_seconds
        self.clock = clock

        self._shutdown = threading.Event()
        self._worker_thread: Optional[threading.Thread] = None
        self._last_purge: Optional[float] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ passes

    def expire_grants(self, report: Optional[SweepReport] = None) -> int:
        """Pass 1: deactivate active grants whose expiry has passed."""
        report = report if report is not None else SweepReport()
        for grant_id in self.grants.find_expired_ids():
            try:
                if self.grants.expire(grant_id):
                    report.expired += 1
            except StorageUnavailableError as e:
                report.skipped += 1
                logger.warning("Skipping grant %s this sweep: %s", grant_id, e)
        return report.expired

    def reclaim_orphans(self, report: Optional[SweepReport] = None) -> int:
        """Pass 2: soft-delete live objects with no active grant left."""
        report = report if report is not None else SweepReport()
        cutoff = None
        if self.orphan_grace_seconds:
            cutoff = to_iso(self.clock() - timedelta(seconds=self.orphan_grace_seconds))
        for object_id in self.objects.find_orphans(created_before=cutoff):
            try:
                if self.objects.soft_delete_orphan(object_id):
                    report.orphaned += 1
            except StorageUnavailableError as e:
                report.skipped += 1
                logger.warning("Skipping object %s this sweep: %s", object_id, e)
        return report.orphaned

    def purge_deleted(self, report: Optional[SweepReport] = None) -> int:
        """Physically remove soft-deleted objects."""
        report = report if report is not None else SweepReport()
        for object_id in self.objects.find_soft_deleted():
            try:
                if self.objects.purge(object_id):
                    report.purged += 1
            except StorageUnavailableError as e:
                report.skipped += 1
                logger.warning("Skipping purge of %s this sweep: %s", object_id, e)
        return report.purged

    def run_once(self, purge: bool = False) -> SweepReport:
        """One full sweep. Safe to call while the background thread runs."""
        report = SweepReport()
        with self._lock:
            self.expire_grants(report)
            self.reclaim_orphans(report)
            if purge:
                self.purge_deleted(report)
                self._last_purge = time.monotonic()
        if report.expired or report.orphaned or report.purged or report.skipped:
            logger.info("Sweep finished: %s", report)
        else:
            logger.debug("Sweep finished: nothing to do")
        return report

    # -------------------------------------------------------------- background

    def _purge_due(self) -> bool:
        if self._last_purge is None:
            return True
        return time.monotonic() - self._last_purge >= self.purge_interval

    def _worker_loop(self) -> None:
        if self._shutdown.wait(self.initial_delay):
            return
        while not self._shutdown.is_set():
            try:
                self.run_once(purge=self._purge_due())
            except Exception as e:
                logger.error("Sweeper error: %s", e)
            self._shutdown.wait(self.interval)

    @property
    def running(self) -> bool:
        return bool(self._worker_thread and self._worker_thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._shutdown.clear()
        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            name="reclamation-sweeper",
            daemon=True,
        )
        self._worker_thread.start()
        logger.info("Sweeper started (every %ss, purge every %ss)",
                    self.interval, self.purge_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown.set()
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=timeout)
        self._worker_thread = None
        logger.debug("Sweeper stopped")
