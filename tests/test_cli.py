"""
Tests for cli.py - operator commands end to end.
"""
import re
import sqlite3
from pathlib import Path

import pytest

import cli
from crypto.codec import generate_material
from errors import TamperedObjectError
from sharing.download import DownloadResult
from storage.models import StoredObject
from vault import ShareVault


@pytest.fixture
def home(tmp_path, monkeypatch):
    for var in ("SHIELDSHARE_DB", "SHIELDSHARE_BLOB_DIR"):
        monkeypatch.delenv(var, raising=False)
    return str(tmp_path / "home")


def run(home, *argv):
    return cli.main(["--home", home, *argv])


def token_from(output):
    return re.search(r"/share/([A-Za-z0-9_-]{43})", output).group(1)


class TestWorkflow:
    def test_upload_share_download(self, home, tmp_path, capsys):
        src = tmp_path / "notes.txt"
        src.write_bytes(b"meeting notes")
        assert run(home, "register", "ann@example.com", "--name", "Ann") == 0
        assert run(home, "upload", str(src), "--as", "ann@example.com",
                   "--share", "--mode", "single") == 0
        out = capsys.readouterr().out
        assert "✅ File uploaded successfully!" in out
        token = token_from(out)

        assert run(home, "info", token) == 0
        assert '"filename": "notes.txt"' in capsys.readouterr().out

        target = tmp_path / "out.txt"
        assert run(home, "download", token, "-o", str(target), "--ip", "10.1.1.1") == 0
        assert target.read_bytes() == b"meeting notes"

        capsys.readouterr()
        assert run(home, "download", token, "-o", str(target)) == 1
        assert "❌ not_found" in capsys.readouterr().out

    def test_download_stays_in_working_dir(self, home, tmp_path, capsys, monkeypatch):
        src = tmp_path / "plain.txt"
        src.write_bytes(b"contents")
        run(home, "register", "ha@example.com")
        run(home, "upload", str(src), "--as", "ha@example.com", "--share")
        token = token_from(capsys.readouterr().out)
        # a name stored before path components were rejected
        conn = sqlite3.connect(str(Path(home) / "shieldshare.db"))
        conn.execute("UPDATE objects SET filename = '../escaped.txt'")
        conn.commit()
        conn.close()

        work = tmp_path / "work" / "dl"
        work.mkdir(parents=True)
        monkeypatch.chdir(work)
        assert run(home, "download", token) == 0
        assert (work / "escaped.txt").read_bytes() == b"contents"
        assert not (tmp_path / "work" / "escaped.txt").exists()

    def test_failed_stream_leaves_no_file(self, home, tmp_path, capsys, monkeypatch):
        entry = StoredObject.new(owner="x", filename="t.bin", content_type="",
                                 size=10, storage_path="/nowhere", stored_name="t.enc",
                                 encryption=generate_material())

        def broken_stream():
            yield b"unverified"
            raise TamperedObjectError("Authentication tag mismatch")

        monkeypatch.setattr(ShareVault, "download",
                            lambda self, token, context=None: DownloadResult(entry, broken_stream()))
        target = tmp_path / "out" / "t.bin"
        target.parent.mkdir()
        assert run(home, "download", "sometoken", "-o", str(target)) == 1
        assert "❌ integrity_violation" in capsys.readouterr().out
        assert list(target.parent.iterdir()) == []

    def test_link_management(self, home, tmp_path, capsys):
        src = tmp_path / "a.bin"
        src.write_bytes(b"\x00" * 10)
        run(home, "register", "bo@example.com")
        run(home, "upload", str(src), "--as", "bo@example.com")
        out = capsys.readouterr().out
        object_id = re.search(r"Object ID: (\S+)", out).group(1)

        assert run(home, "share", object_id, "--as", "bo@example.com",
                   "--limit", "3", "--password", "pw") == 0
        out = capsys.readouterr().out
        assert "🔒 Password protected" in out
        grant_id_prefix = re.search(r"ID: (\w{8})\.\.\.", out).group(1)

        assert run(home, "links", "--as", "bo@example.com") == 0
        assert grant_id_prefix in capsys.readouterr().out

        assert run(home, "download", token_from(out), "-o", str(tmp_path / "x")) == 1
        assert "password_required" in capsys.readouterr().out

        assert run(home, "delete", object_id, "--as", "bo@example.com") == 0
        assert run(home, "list", "--as", "bo@example.com") == 0
        assert "No objects stored" in capsys.readouterr().out

    def test_ownership_enforced(self, home, tmp_path, capsys):
        src = tmp_path / "s.txt"
        src.write_bytes(b"mine")
        run(home, "register", "cy@example.com")
        run(home, "register", "di@example.com")
        run(home, "upload", str(src), "--as", "cy@example.com")
        object_id = re.search(r"Object ID: (\S+)", capsys.readouterr().out).group(1)
        assert run(home, "delete", object_id, "--as", "di@example.com") == 1
        assert "access_denied" in capsys.readouterr().out

    def test_sweep_and_stats(self, home, capsys):
        run(home, "register", "ed@example.com")
        assert run(home, "sweep", "--purge") == 0
        assert "Sweep complete" in capsys.readouterr().out
        assert run(home, "stats", "--as", "ed@example.com", "--top", "3") == 0
        out = capsys.readouterr().out
        assert '"total_links": 0' in out
        assert '"top_objects": []' in out


class TestErrors:
    def test_unknown_subject(self, home, capsys):
        assert run(home, "list", "--as", "ghost@example.com") == 1
        assert "❌ not_found" in capsys.readouterr().out

    def test_missing_file(self, home, capsys):
        run(home, "register", "fi@example.com")
        assert run(home, "upload", "/no/such/file", "--as", "fi@example.com") == 1
        assert "File not found" in capsys.readouterr().out

    def test_quota(self, home, tmp_path, capsys):
        src = tmp_path / "big.bin"
        src.write_bytes(b"x" * 100)
        run(home, "register", "gi@example.com", "--quota", "50")
        assert run(home, "upload", str(src), "--as", "gi@example.com") == 1
        assert "quota_exceeded" in capsys.readouterr().out

    def test_requires_subcommand(self, home):
        with pytest.raises(SystemExit):
            cli.main(["--home", home])
