"""
Pytest configuration and shared fixtures for ShieldShare tests.
"""
from datetime import datetime, timedelta, timezone

import pytest

from accounts.models import ROLE_ADMIN
from config import Settings
from sharing.models import AccessContext, GrantPolicy
from vault import ShareVault


class FakeClock:
    """Settable UTC clock injected into the services."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    return Settings(data_dir=tmp_path / ".shieldshare", chunk_size=1024,
                    storage_timeout=10.0, sweep_initial_delay=0)


@pytest.fixture
def vault(settings, clock):
    v = ShareVault(settings, clock=clock)
    yield v
    v.close()


@pytest.fixture
def owner(vault):
    return vault.register("owner@example.com", "Owner")


@pytest.fixture
def other(vault):
    return vault.register("other@example.com", "Other")


@pytest.fixture
def admin(vault):
    return vault.register("admin@example.com", "Admin", role=ROLE_ADMIN)


@pytest.fixture
def sample_content():
    """A few chunks worth of content with a partial last chunk."""
    return bytes(range(256)) * 17 + b"tail"


@pytest.fixture
def stored(vault, owner, sample_content):
    entry, _ = vault.upload(owner.subject_id, "report.pdf", sample_content,
                            content_type="application/pdf")
    return entry


@pytest.fixture
def make_grant(vault, owner, stored):
    """Create a grant on the sample object with policy overrides."""
    def _make(**policy):
        return vault.share(stored.object_id, owner.subject_id, GrantPolicy(**policy))
    return _make


@pytest.fixture
def anon():
    return AccessContext(address="203.0.113.7", user_agent="pytest")
