"""Advisory file locks guarding provisioning runs.

A provisioning run holds the host-wide ``rpsctl.lock`` for its whole duration,
followed by the per-site lock. Lock files are left on disk after release and
contain JSON metadata about the most recent holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from .errors import PreconditionError

GLOBAL_LOCK_NAME = "rpsctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(PreconditionError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int
    handle: IO[str]


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together, in order."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create and acquire advisory locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def global_lock_path(self) -> Path:
        """Return the path of the host-wide lock."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def site_lock_path(self, site: str) -> Path:
        """Return the path of the lock for *site*."""
        return self.runtime_dir / f"{site}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the host-wide lock."""
        with self._acquire(self.global_lock_path(), timeout) as handle:
            yield handle

    @contextmanager
    def site_lock(self, site: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single site."""
        with self._acquire(self.site_lock_path(site), timeout) as handle:
            yield handle

    @contextmanager
    def provision_lock(
        self,
        sites: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each site lock (sorted)."""
        bundle = LockBundle()
        with ExitStack() as stack:
            bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for site in sorted(set(sites)):
                bundle.handles.append(stack.enter_context(self.site_lock(site, timeout=timeout)))
            yield bundle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            self._write_metadata(handle, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, handle=handle)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    @staticmethod
    def _write_metadata(handle: IO[str], path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(),
        }
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(payload))
        handle.flush()


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
