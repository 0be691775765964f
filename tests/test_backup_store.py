"""Tests for the timestamped backup store."""

from pathlib import Path

import pytest

import xfce_xrdp_2fa
from xfce_xrdp_2fa import BackupStore, replace_file


@pytest.fixture
def store(tmp_path):
    return BackupStore(tmp_path / "backups")


@pytest.fixture
def target(tmp_path):
    path = tmp_path / "etc" / "pam.d" / "xrdp-sesman"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"#%PAM-1.0\n@include common-auth\n\x00binary\xff")
    path.chmod(0o640)
    return path


def test_backup_of_missing_file_is_noop(store, tmp_path):
    assert store.backup(tmp_path / "nope") is None
    assert not store.root.exists()


def test_backup_path_mirrors_absolute_path(store, target, clock):
    backup = store.backup(target)
    expected = Path(str(store.root) + str(target) + ".20260101T000000Z")
    assert backup == expected
    assert backup.read_bytes() == target.read_bytes()


def test_backup_then_restore_reproduces_bytes_and_mode(store, target):
    original = target.read_bytes()
    store.backup(target)
    target.write_text("clobbered")
    target.chmod(0o777)
    assert store.restore_latest(target) is not None
    assert target.read_bytes() == original
    assert target.stat().st_mode & 0o777 == 0o640


def test_restore_recreates_deleted_file(store, target):
    original = target.read_bytes()
    store.backup(target)
    target.unlink()
    store.restore_latest(target)
    assert target.read_bytes() == original


def test_restore_without_backup_reports_not_found(store, target):
    before = target.read_bytes()
    assert store.restore_latest(target) is None
    assert target.read_bytes() == before


def test_latest_backup_wins(store, target, clock):
    target.write_text("first")
    store.backup(target)
    target.write_text("second")
    second = store.backup(target)
    target.write_text("third")
    assert store.restore_latest(target) == second
    assert target.read_text() == "second"


def test_same_second_backups_do_not_overwrite(store, target, monkeypatch):
    monkeypatch.setattr(xfce_xrdp_2fa, "timestamp", lambda: "20260101T000000Z")
    target.write_text("one")
    first = store.backup(target)
    target.write_text("two")
    second = store.backup(target)
    assert first != second
    assert second.name.endswith(".20260101T000000Z.01")
    assert first.read_text() == "one"
    assert store.list_backups(target) == [first, second]
    store.restore_latest(target)
    assert target.read_text() == "two"


def test_prefix_sharing_siblings_are_ignored(store, target, clock):
    sibling = target.with_name("xrdp-sesman.conf")
    sibling.write_text("other")
    store.backup(target)
    store.backup(sibling)
    backups = store.list_backups(target)
    assert len(backups) == 1
    assert backups[0].name.startswith("xrdp-sesman.2026")


def test_replace_file_backs_up_then_writes(store, target, clock):
    original = target.read_bytes()
    backup = replace_file(store, target, "managed\n", 0o755)
    assert backup.read_bytes() == original
    assert target.read_text() == "managed\n"
    assert target.stat().st_mode & 0o777 == 0o755


def test_replace_file_on_new_path_has_no_backup(store, tmp_path):
    path = tmp_path / "home" / ".xsession"
    assert replace_file(store, path, "startxfce4\n", 0o700) is None
    assert path.read_text() == "startxfce4\n"


def test_relative_paths_are_rejected(store):
    with pytest.raises(ValueError):
        store.backup_path_for(Path("etc/passwd"), "20260101T000000Z")
