"""Inter-process file locks guarding registry statements.

Every datastore statement that reads, modifies and rewrites a registry file
holds the matching lock under ``<runtime_dir>/registry`` for the duration of
that single statement. Locks are advisory ``flock`` locks; the lockfile itself
persists after release and carries JSON metadata about the last holder for
diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(frozen=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Create and acquire registry statement locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str) -> Path:
        """Return the lockfile path guarding registry file *name*."""
        safe = name.strip().replace("/", "-")
        if not safe:
            raise LockTimeoutError("Lock name must be a non-empty string.")
        return self.runtime_dir / "registry" / f"{safe}.lock"

    @contextmanager
    def registry_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the statement lock for registry file *name*."""
        path = self.lock_path(name)
        with self._acquire(path, self.default_timeout if timeout is None else timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float) -> Iterator[LockHandle]:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise LockTimeoutError(
                            f"Timed out after {timeout:.2f}s waiting for lock {path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
