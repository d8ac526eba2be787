"""Tests for the directory lock manager."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from fedidir.locking import LockManager, LockTimeoutError


def test_lock_writes_metadata_and_releases(tmp_path: Path) -> None:
    """Acquiring a lock records the holder and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "alpha.lock"
    with manager.lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # The file stays behind for diagnostics but no longer holds the lock.
    with manager.lock("alpha", timeout=0.2):
        pass


def test_lock_times_out_while_held(tmp_path: Path) -> None:
    """A second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.lock("alpha", timeout=0.1):
                pass


def test_mutate_directory_uses_instances_lock(tmp_path: Path) -> None:
    """Directory mutations share one lock file under the runtime dir."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_directory() as handle:
        assert handle.path == tmp_path / "run" / "instances.lock"
        with pytest.raises(LockTimeoutError):
            with LockManager(tmp_path / "run").mutate_directory(timeout=0.1):
                pass
