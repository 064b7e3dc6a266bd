"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from rpsctl.errors import PreconditionError
from rpsctl.locking import LockManager, LockTimeoutError


def test_site_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "acme.lock"
    with manager.site_lock("acme") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.site_lock("acme", timeout=0.2):
        pass


def test_global_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.global_lock(timeout=0.1):
                pass


def test_lock_timeout_is_a_precondition_failure() -> None:
    """Lock timeouts map onto the environment exit code."""
    assert issubclass(LockTimeoutError, PreconditionError)


def test_provision_lock_acquires_global_then_site(tmp_path: Path) -> None:
    """Lock bundles acquire the host lock first followed by the site lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.provision_lock(["acme"]) as bundle:
        assert bundle.wait_ms >= 0
        assert len(bundle.handles) == 2
        assert (tmp_path / "run" / "rpsctl.lock").exists()
        assert (tmp_path / "run" / "acme.lock").exists()
        with pytest.raises(LockTimeoutError):
            with manager.provision_lock(["blog"], timeout=0.1):
                pass
