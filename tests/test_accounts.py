"""
Tests for the accounts package - subjects, quota counter, hashing, ownership.
"""
import pytest

from accounts.authorization import ensure_owner, is_owner
from accounts.hashing import SimpleHasher
from errors import AccessDeniedError, NotFoundError, ValidationError


class TestRegistration:
    def test_register_defaults(self, vault):
        s = vault.register("  Alice@Example.COM ", "Alice")
        assert s.email == "alice@example.com"
        assert s.storage_quota == vault.settings.storage_quota
        assert s.storage_used == 0
        assert not s.is_admin

    def test_duplicate_email(self, vault, owner):
        with pytest.raises(ValidationError):
            vault.register("OWNER@example.com")

    def test_invalid_email(self, vault):
        with pytest.raises(ValidationError):
            vault.register("not-an-email")

    def test_lookup(self, vault, owner, admin):
        assert vault.accounts.email_of(owner.subject_id) == "owner@example.com"
        assert vault.accounts.email_of(None) is None
        assert vault.accounts.is_admin(admin.subject_id)
        assert not vault.accounts.is_admin(owner.subject_id)
        with pytest.raises(NotFoundError):
            vault.accounts.get("missing")


class TestQuota:
    def test_reserve_is_conditional(self, vault):
        s = vault.register("q@example.com", storage_quota=100)
        assert vault.subjects.reserve_quota(s.subject_id, 60)
        assert not vault.subjects.reserve_quota(s.subject_id, 50)
        assert vault.subjects.reserve_quota(s.subject_id, 40)
        assert vault.accounts.get(s.subject_id).storage_available == 0

    def test_release_never_negative(self, vault):
        s = vault.register("r@example.com", storage_quota=100)
        vault.subjects.reserve_quota(s.subject_id, 10)
        vault.subjects.release_quota(s.subject_id, 50)
        assert vault.accounts.get(s.subject_id).storage_used == 0

    def test_storage_info(self, vault):
        s = vault.register("i@example.com", storage_quota=2048)
        vault.subjects.reserve_quota(s.subject_id, 1024)
        info = vault.accounts.storage_info(s.subject_id)
        assert info["used"] == "1 KB"
        assert info["percent"] == 50


class TestHasher:
    def test_hash_and_verify(self):
        h = SimpleHasher()
        stored = h.hash("hunter2")
        assert stored != "hunter2"
        assert h.verify(stored, "hunter2")
        assert not h.verify(stored, "hunter3")

    def test_garbage_hash(self):
        assert not SimpleHasher().verify("not-a-hash", "x")


class TestOwnership:
    def test_is_owner(self):
        assert is_owner("a", "a")
        assert not is_owner("a", "b")
        assert not is_owner("a", None)

    def test_ensure_owner(self):
        ensure_owner("a", "a")
        ensure_owner("a", "b", admin_override=True)
        with pytest.raises(AccessDeniedError) as exc:
            ensure_owner("a", "b", resource="object")
        assert exc.value.details["reason"] == "not_owner"
