"""
Racing consumers against the SQLite store with real threads.
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from errors import LimitReachedError
from sharing.models import DeactivationReason


def race(fn, n):
    """Run `fn` from `n` threads released at the same instant."""
    barrier = threading.Barrier(n)

    def attempt(_):
        barrier.wait()
        try:
            return fn()
        except LimitReachedError as e:
            return e

    with ThreadPoolExecutor(max_workers=n) as pool:
        return list(pool.map(attempt, range(n)))


class TestConsumeRaces:
    @pytest.mark.parametrize("run", range(3))
    def test_single_mode_two_racers(self, vault, make_grant, run):
        g = make_grant(mode="single")
        results = race(lambda: vault.grants.consume(g.grant_id, "10.0.0.1"), 2)
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, LimitReachedError)]
        assert len(winners) == 1
        assert len(losers) == 1
        latest = vault.grants._fetch(g.grant_id)
        assert latest.consumed_count == 1
        assert not latest.active
        assert latest.deactivation_reason == DeactivationReason.LIMIT_REACHED

    @pytest.mark.parametrize("run", range(3))
    def test_multiple_mode_many_racers(self, vault, make_grant, run):
        limit = 5
        g = make_grant(download_limit=limit)
        results = race(lambda: vault.grants.consume(g.grant_id), 12)
        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == limit
        assert sorted(w.consumed_count for w in winners) == list(range(1, limit + 1))
        assert vault.grants._fetch(g.grant_id).consumed_count == limit
        with pytest.raises(LimitReachedError):
            vault.grants.consume(g.grant_id)
        assert vault.grants._fetch(g.grant_id).consumed_count == limit

    def test_unlimited_counts_every_racer(self, vault, make_grant):
        g = make_grant(mode="unlimited")
        results = race(lambda: vault.grants.consume(g.grant_id), 8)
        assert not any(isinstance(r, Exception) for r in results)
        latest = vault.grants._fetch(g.grant_id)
        assert latest.consumed_count == 8
        assert latest.active

    def test_downloads_race_through_full_path(self, vault, make_grant, sample_content):
        from sharing.models import AccessContext

        g = make_grant(mode="single")

        def grab():
            return vault.download(g.token, AccessContext(address="10.0.0.9")).read_all()

        barrier = threading.Barrier(4)

        def attempt(_):
            barrier.wait()
            try:
                return grab()
            except Exception as e:
                return e

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(attempt, range(4)))
        payloads = [r for r in results if isinstance(r, bytes)]
        assert payloads == [sample_content]
        assert vault.grants._fetch(g.grant_id).consumed_count == 1
        stats = vault.ledger.stats(grant_id=g.grant_id)
        assert stats["successful"] == 1
