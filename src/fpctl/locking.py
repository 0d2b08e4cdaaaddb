"""Advisory file locks guarding installation directories.

Only one mutating operation may run against an installation at a time. The
lock file lives under ``<runtime_dir>/installations`` (not inside the
installation, which is replaced wholesale during promotion) and is named after
a digest of the installation's resolved path. Lock files persist after
release so the last holder can be diagnosed.
"""
from __future__ import annotations

import fcntl
import hashlib
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
    """Raised when a lock could not be acquired within the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    target: Path
    wait_ms: int


class LockManager:
    """Acquire per-installation locks under a runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, install_dir: Path) -> Path:
        """Return the lock file used for *install_dir*."""
        resolved = str(install_dir.expanduser().resolve())
        digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]
        return self.runtime_dir / "installations" / f"{digest}.lock"

    @contextmanager
    def installation_lock(
        self,
        install_dir: Path,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold an exclusive lock for *install_dir* for the duration of the block."""
        path = self.lock_path(install_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()

        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for the lock on {install_dir}"
                            f" ({path})."
                        ) from None
                    time.sleep(_POLL_INTERVAL)

            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path, install_dir)
            try:
                yield LockHandle(path=path, target=install_dir, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path, target: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "target": str(target),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
