"""
Tests for storage/file_manager.py - encrypted object lifecycle.
"""
import io
from pathlib import Path

import pytest

from errors import (
    AccessDeniedError,
    IntegrityUnavailableError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)
from sharing.models import DeactivationReason, GrantPolicy

MB = 1024 * 1024


def blob_files(vault):
    return sorted(p.name for p in Path(vault.settings.blob_dir).iterdir())


class TestCreate:
    def test_bytes_are_encrypted_at_rest(self, vault, stored, sample_content):
        raw = Path(stored.storage_path).read_bytes()
        assert raw != sample_content
        assert len(raw) == len(sample_content)
        assert stored.stored_name.endswith(".enc")
        assert "report" not in stored.stored_name

    def test_read_paths_hide_material(self, vault, owner, stored):
        assert stored.encryption is None
        assert vault.objects.get(stored.object_id, owner.subject_id).encryption is None
        assert all(o.encryption is None for o in vault.list_objects(owner.subject_id))
        assert "key" not in str(stored.to_dict())

    def test_decrypt_round_trip(self, vault, stored, sample_content):
        assert b"".join(vault.objects.open_decrypted_stream(stored.object_id)) == sample_content

    def test_streamed_file_source(self, vault, owner):
        data = b"streamed" * 1000
        entry = vault.objects.create(owner.subject_id, "s.bin", "", len(data), io.BytesIO(data))
        assert entry.content_type == "application/octet-stream"
        assert b"".join(vault.objects.open_decrypted_stream(entry.object_id)) == data

    def test_quota_is_charged(self, vault, owner, stored, sample_content):
        assert vault.accounts.get(owner.subject_id).storage_used == len(sample_content)

    def test_gcm_store(self, tmp_path, clock):
        from config import Settings
        from vault import ShareVault

        settings = Settings(data_dir=tmp_path / "gcm", cipher_algorithm="aes-256-gcm")
        with ShareVault(settings, clock=clock) as v:
            s = v.register("g@example.com")
            entry, _ = v.upload(s.subject_id, "g.txt", b"galois")
            assert entry.algorithm == "aes-256-gcm"
            assert Path(entry.storage_path).stat().st_size == len(b"galois") + 16
            assert b"".join(v.objects.open_decrypted_stream(entry.object_id)) == b"galois"

    def test_empty_filename(self, vault, owner):
        with pytest.raises(ValidationError):
            vault.upload(owner.subject_id, "  ", b"x")

    @pytest.mark.parametrize("name", ["../escaped.txt", "a/b.txt", "c\\d.txt", ".."])
    def test_filename_with_path_rejected(self, vault, owner, name):
        with pytest.raises(ValidationError) as exc:
            vault.upload(owner.subject_id, name, b"x")
        assert exc.value.details["field"] == "filename"
        assert blob_files(vault) == []
        assert vault.accounts.get(owner.subject_id).storage_used == 0

    def test_streamed_source_needs_size(self, vault, owner):
        with pytest.raises(ValidationError) as exc:
            vault.upload(owner.subject_id, "x.bin", iter([b"abc"]))
        assert exc.value.details["field"] == "size"

    @pytest.mark.parametrize("size", ["3", 3.0, None, True, -1])
    def test_size_must_be_integer(self, vault, owner, size):
        with pytest.raises(ValidationError):
            vault.objects.create(owner.subject_id, "x.bin", "", size, b"abc")
        assert vault.accounts.get(owner.subject_id).storage_used == 0


class TestQuotaScenario:
    def test_over_quota_leaves_nothing_behind(self, vault):
        s = vault.register("full@example.com", storage_quota=1000 * MB)
        assert vault.subjects.reserve_quota(s.subject_id, 900 * MB)

        def never_read():
            raise AssertionError("source must not be consumed")
            yield b""

        with pytest.raises(QuotaExceededError) as exc:
            vault.objects.create(s.subject_id, "big.iso", "", 200 * MB, never_read())
        assert exc.value.details["available_bytes"] == 100 * MB
        assert blob_files(vault) == []
        assert vault.list_objects(s.subject_id) == []
        assert vault.accounts.get(s.subject_id).storage_used == 900 * MB

    def test_size_mismatch_rolls_back(self, vault, owner):
        with pytest.raises(ValidationError):
            vault.upload(owner.subject_id, "lie.txt", b"12345", size=3)
        assert blob_files(vault) == []
        assert vault.accounts.get(owner.subject_id).storage_used == 0

    def test_unknown_owner(self, vault):
        with pytest.raises(NotFoundError):
            vault.upload("nobody", "x.txt", b"x")


class TestReads:
    def test_ownership(self, vault, other, admin, stored):
        with pytest.raises(AccessDeniedError):
            vault.objects.get(stored.object_id, other.subject_id)
        assert vault.objects.get(stored.object_id, admin.subject_id, admin_override=True)

    def test_list_newest_first_and_paginated(self, vault, owner, clock):
        for name in ("a", "b", "c"):
            vault.upload(owner.subject_id, name, b"1")
            clock.advance(seconds=1)
        names = [o.filename for o in vault.list_objects(owner.subject_id)]
        assert names == ["c", "b", "a"]
        assert [o.filename for o in vault.objects.list(owner.subject_id, limit=1, skip=1)] == ["b"]

    def test_list_all(self, vault, owner, other):
        vault.upload(owner.subject_id, "a", b"1")
        vault.upload(other.subject_id, "b", b"2")
        objects, total = vault.list_all_objects()
        assert total == 2
        assert {o.filename for o in objects} == {"a", "b"}

    def test_missing_bytes(self, vault, stored):
        Path(stored.storage_path).unlink()
        assert not vault.objects.verify_integrity(stored.object_id)
        with pytest.raises(IntegrityUnavailableError):
            vault.objects.open_decrypted_stream(stored.object_id)


class TestSoftDeleteAndPurge:
    def test_soft_delete_retires_grants(self, vault, owner, stored, make_grant, anon):
        g1 = make_grant()
        g2 = make_grant(mode="unlimited")
        deleted = vault.delete(stored.object_id, owner.subject_id)
        assert deleted.deleted
        assert not Path(stored.storage_path).exists()
        for g in (g1, g2):
            latest = vault.grants.get(g.grant_id, owner.subject_id)
            assert not latest.active
            assert latest.deactivation_reason == DeactivationReason.OBJECT_DELETED
            with pytest.raises(NotFoundError):
                vault.grants.validate(g.token, anon)
        assert vault.accounts.get(owner.subject_id).storage_used == 0

    def test_soft_delete_hides_object(self, vault, owner, stored):
        vault.delete(stored.object_id, owner.subject_id)
        with pytest.raises(NotFoundError):
            vault.objects.get(stored.object_id, owner.subject_id)
        with pytest.raises(NotFoundError):
            vault.delete(stored.object_id, owner.subject_id)
        assert vault.list_objects(owner.subject_id) == []

    def test_only_owner_deletes(self, vault, other, stored):
        with pytest.raises(AccessDeniedError):
            vault.delete(stored.object_id, other.subject_id)

    def test_admin_deletes(self, vault, admin, stored):
        assert vault.delete(stored.object_id, admin.subject_id).deleted

    def test_purge(self, vault, owner, stored, make_grant):
        g = make_grant()
        with pytest.raises(ValidationError):
            vault.objects.purge(stored.object_id)
        vault.delete(stored.object_id, owner.subject_id)
        assert vault.objects.purge(stored.object_id)
        assert not vault.objects.purge(stored.object_id)
        assert vault.objects.find_soft_deleted() == []
        # grants survive the purge
        assert vault.grants.get(g.grant_id, owner.subject_id).object_id == stored.object_id

    def test_purge_is_idempotent_when_bytes_gone(self, vault, owner, stored):
        vault.delete(stored.object_id, owner.subject_id)
        assert not Path(stored.storage_path).exists()
        assert vault.objects.purge(stored.object_id)
        assert vault.accounts.get(owner.subject_id).storage_used == 0


class TestOrphans:
    def test_orphan_guard(self, vault, stored, make_grant):
        make_grant()
        assert vault.objects.find_orphans() == []
        assert not vault.objects.soft_delete_orphan(stored.object_id)

    def test_reclaim(self, vault, stored):
        assert vault.objects.find_orphans() == [stored.object_id]
        assert vault.objects.soft_delete_orphan(stored.object_id)
        assert not vault.objects.soft_delete_orphan(stored.object_id)


def test_policy_on_upload(vault, owner):
    entry, grant = vault.upload(owner.subject_id, "x.txt", b"hello",
                                share=GrantPolicy(mode="single"))
    assert grant.object_id == entry.object_id
    assert grant.download_limit == 1
