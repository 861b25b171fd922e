from pathlib import Path

import pytest

import session_store
from process_lock import SessionLock, SessionLockHeldError, read_lock_holder
from session_store import SessionStore


def _populate(root: Path) -> None:
    (root / "Default" / "IndexedDB").mkdir(parents=True)
    (root / "Default" / "IndexedDB" / "wawc.db").write_text("x", encoding="utf-8")
    (root / "Local State").write_text("{}", encoding="utf-8")


def test_clear_removes_session_and_cache(tmp_path: Path):
    store = SessionStore(tmp_path / "auth", tmp_path / "cache")
    _populate(store.session_dir)
    _populate(store.cache_dir)
    assert store.has_session() is True

    result = store.clear()

    assert result.ok is True
    assert set(result.removed) == {store.session_dir, store.cache_dir}
    assert not store.session_dir.exists()
    assert not store.cache_dir.exists()
    assert store.has_session() is False


def test_clear_is_idempotent_without_session(tmp_path: Path):
    store = SessionStore(tmp_path / "auth", tmp_path / "cache")

    first = store.clear()
    second = store.clear()

    assert first.ok and second.ok
    assert first.removed == () and second.removed == ()
    assert store.describe() == {
        "session_dir_exists": False,
        "cache_dir_exists": False,
        "session_present": False,
    }


def test_empty_session_dir_is_not_a_session(tmp_path: Path):
    store = SessionStore(tmp_path / "auth", tmp_path / "cache")
    store.session_dir.mkdir()
    assert store.has_session() is False


def test_clear_falls_back_to_per_file_removal(tmp_path: Path, monkeypatch):
    store = SessionStore(tmp_path / "auth", tmp_path / "cache")
    _populate(store.session_dir)

    def failing_rmtree(path):
        raise OSError("device or resource busy")

    monkeypatch.setattr(session_store.shutil, "rmtree", failing_rmtree)
    result = store.clear()

    assert result.ok is True
    assert result.removed == (store.session_dir,)
    assert not store.session_dir.exists()


def test_clear_reports_partial_failure_without_raising(tmp_path: Path, monkeypatch):
    store = SessionStore(tmp_path / "auth", tmp_path / "cache")
    _populate(store.session_dir)
    locked_file = store.session_dir / "Local State"
    original_unlink = Path.unlink

    def failing_rmtree(path):
        raise OSError("device or resource busy")

    def selective_unlink(self, *args, **kwargs):
        if self == locked_file:
            raise PermissionError("file in use")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(session_store.shutil, "rmtree", failing_rmtree)
    monkeypatch.setattr(Path, "unlink", selective_unlink)
    result = store.clear()

    assert result.ok is False
    assert result.removed == ()
    assert any("Local State" in failure for failure in result.failures)
    assert locked_file.exists()
    assert not (store.session_dir / "Default").exists()


def test_session_lock_is_exclusive_and_records_pid(tmp_path: Path):
    path = tmp_path / "state" / "session.lock"
    first = SessionLock(path)
    first.acquire()
    try:
        assert first.held is True
        assert read_lock_holder(path) is not None
        with pytest.raises(SessionLockHeldError) as exc:
            SessionLock(path).acquire()
        assert "pid" in str(exc.value)
    finally:
        first.release()

    assert read_lock_holder(path) is None
    with SessionLock(path) as second:
        assert second.held is True
    assert second.held is False
