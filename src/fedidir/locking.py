"""Cross-process locks guarding directory mutations.

Locks are advisory ``fcntl.flock`` locks on files under the configured
``runtime_dir``. A lock file outlives its holder and keeps JSON metadata about
the last process that acquired it, which helps when diagnosing a stuck CLI.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

LOGGER = logging.getLogger(__name__)

DIRECTORY_LOCK_NAME = "instances"
DEFAULT_LOCK_TIMEOUT = 30.0
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock is not acquired within its timeout."""


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Information about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire named exclusive locks below *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = DEFAULT_LOCK_TIMEOUT) -> None:
        """Bind the manager to *runtime_dir*; the directory is created lazily."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)

    def path_for(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the exclusive lock *name* for the duration of the block."""
        limit = self.default_timeout if timeout is None else float(timeout)
        path = self.path_for(name)
        self.runtime_dir.mkdir(parents=True, exist_ok=True)

        started = time.monotonic()
        with path.open("a+", encoding="utf-8") as handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:g}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            if wait_ms:
                LOGGER.debug("Acquired %s after %sms", path, wait_ms)
            try:
                _write_metadata(handle, path)
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def mutate_directory(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Hold the lock that serialises every write to the instance directory."""
        return self.lock(DIRECTORY_LOCK_NAME, timeout=timeout)


def _write_metadata(handle: TextIO, path: Path) -> None:
    metadata = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(metadata) + "\n")
    handle.flush()


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
