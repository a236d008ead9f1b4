"""
Tests for reclamation/sweeper.py - expiry, orphan reclamation and purge.
"""
from datetime import timedelta
from pathlib import Path

import pytest

from errors import StorageUnavailableError
from reclamation.sweeper import SweepReport, Sweeper
from sharing.models import DeactivationReason


class TestPasses:
    def test_expired_grant_then_orphan(self, vault, owner, stored, make_grant, clock):
        g = make_grant(expires_at=clock.now + timedelta(seconds=1))
        clock.advance(seconds=2)

        assert vault.sweeper.expire_grants() == 1
        latest = vault.grants.get(g.grant_id, owner.subject_id)
        assert not latest.active
        assert latest.deactivation_reason == DeactivationReason.EXPIRED

        assert vault.sweeper.reclaim_orphans() == 1
        assert vault.objects.find(stored.object_id).deleted
        assert not Path(stored.storage_path).exists()

    def test_run_once_orders_passes(self, vault, stored, make_grant, clock):
        make_grant(expires_in_hours=1)
        clock.advance(hours=2)
        report = vault.sweep()
        assert (report.expired, report.orphaned, report.purged) == (1, 1, 0)
        report = vault.sweep(purge=True)
        assert (report.expired, report.orphaned, report.purged) == (0, 0, 1)
        assert vault.objects.find(stored.object_id) is None

    def test_live_grant_protects_object(self, vault, stored, make_grant, clock):
        make_grant(expires_in_hours=1)
        make_grant(expires_in_hours=48)
        clock.advance(hours=2)
        report = vault.sweep()
        assert report.expired == 1
        assert report.orphaned == 0
        assert not vault.objects.find(stored.object_id).deleted

    def test_idempotent(self, vault, stored, make_grant, clock):
        make_grant(expires_in_hours=1)
        clock.advance(hours=2)
        vault.sweep(purge=True)
        assert vault.sweep(purge=True) == SweepReport()

    def test_never_resurrects(self, vault, owner, make_grant, clock):
        g = make_grant(expires_in_hours=1)
        vault.revoke(g.grant_id, owner.subject_id)
        clock.advance(hours=2)
        assert vault.sweep().expired == 0
        assert vault.grants.get(g.grant_id, owner.subject_id).deactivation_reason == \
            DeactivationReason.MANUAL

    def test_orphan_grace(self, vault, stored, clock):
        sweeper = Sweeper(vault.grants, vault.objects, orphan_grace_seconds=600, clock=clock)
        assert sweeper.run_once().orphaned == 0
        clock.advance(minutes=11)
        assert sweeper.run_once().orphaned == 1


class TestFailures:
    def test_storage_errors_skip_items(self, vault, stored, make_grant, clock, monkeypatch):
        make_grant(expires_in_hours=1)
        make_grant(expires_in_hours=1)
        clock.advance(hours=2)
        calls = []
        real_expire = vault.grants.expire

        def flaky(grant_id):
            calls.append(grant_id)
            if len(calls) == 1:
                raise StorageUnavailableError("database is locked")
            return real_expire(grant_id)

        monkeypatch.setattr(vault.grants, "expire", flaky)
        report = vault.sweep()
        assert report.expired == 1
        assert report.skipped == 1
        # the object still has the skipped grant active
        assert report.orphaned == 0

        monkeypatch.setattr(vault.grants, "expire", real_expire)
        report = vault.sweep()
        assert (report.expired, report.orphaned) == (1, 1)


class TestBackground:
    def test_start_and_stop(self, vault, stored, make_grant, clock):
        make_grant(expires_in_hours=1)
        clock.advance(hours=2)
        sweeper = Sweeper(vault.grants, vault.objects, interval=3600,
                          initial_delay=0, clock=clock)
        sweeper.start()
        assert sweeper.running
        # first pass runs right after start; wait for the object to be purged
        deadline = 200
        while vault.objects.find(stored.object_id) is not None and deadline:
            sweeper._shutdown.wait(0.05)
            deadline -= 1
        sweeper.stop()
        assert not sweeper.running
        assert vault.objects.find(stored.object_id) is None

    def test_expire_stale(self, vault, make_grant, clock):
        make_grant(expires_in_hours=1)
        make_grant(expires_in_hours=1)
        clock.advance(hours=2)
        assert vault.grants.expire_stale() == 2
        assert vault.grants.expire_stale() == 0


@pytest.mark.parametrize("purge", [False, True])
def test_report_str(vault, purge):
    assert "expired=0" in str(vault.sweep(purge=purge))
