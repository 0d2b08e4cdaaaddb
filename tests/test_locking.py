"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from fpctl.locking import LockManager, LockTimeoutError


def test_installation_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    install_dir = tmp_path / "server"

    lock_path = manager.lock_path(install_dir)
    with manager.installation_lock(install_dir) as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert data["target"] == str(install_dir)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.installation_lock(install_dir, timeout=0.2):
        pass


def test_installation_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    install_dir = tmp_path / "server"

    with manager.installation_lock(install_dir):
        with pytest.raises(LockTimeoutError):
            with manager.installation_lock(install_dir, timeout=0.1):
                pass


def test_distinct_installations_use_distinct_locks(tmp_path: Path) -> None:
    """Different installation directories never contend for the same lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    first = manager.lock_path(tmp_path / "a")
    second = manager.lock_path(tmp_path / "b")
    assert first != second
    assert first.parent == tmp_path / "run" / "installations"

    with manager.installation_lock(tmp_path / "a"):
        with manager.installation_lock(tmp_path / "b", timeout=0.1) as handle:
            assert handle.target == tmp_path / "b"


def test_lock_path_normalises_relative_paths(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Relative and absolute spellings of a directory share a lock."""
    monkeypatch.chdir(tmp_path)
    manager = LockManager(tmp_path / "run")

    assert manager.lock_path(Path("server")) == manager.lock_path(tmp_path / "server")
