"""
Advisory File Locks
===================

Cross-process mutual exclusion for the file store.

A lock is held by whoever managed to create the lock file exclusively
(``filelock.SoftFileLock`` uses O_CREAT | O_EXCL, which works on every
platform and on network filesystems where flock is unreliable). Waiting
is a poll loop with a hard deadline, so no caller ever blocks forever:

- default timeout 5 seconds, poll interval 100 ms
- a lock file older than the timeout belongs to a dead holder; it is
  taken over and acquisition is retried immediately
- otherwise the caller gets ``LockTimeout`` and should retry later

Taking over a stale lock renames it to a unique name first and checks
that the renamed file is still the one judged stale. If another
contender already replaced it with a fresh lock, that lock is put back.
SoftFileLock only deletes the lock file it created itself on release, so a
holder whose lock was taken over leaves the new lock in place.
"""

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Optional

from filelock import SoftFileLock, Timeout

from ..errors import LockTimeout

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SEC = 5.0
DEFAULT_POLL_INTERVAL_SEC = 0.1


def _identity(stat: os.stat_result) -> tuple:
    return (stat.st_dev, stat.st_ino, stat.st_mtime_ns)


class AdvisoryLock:
    """
    Exclusive lock realized by a lock file.

    Usage:
        with AdvisoryLock(path / "tasks.json.lock"):
            ...read-modify-write...
    """

    def __init__(
        self,
        lock_path: "str | Path",
        timeout: float = DEFAULT_LOCK_TIMEOUT_SEC,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
    ):
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._lock = SoftFileLock(str(self.lock_path))

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> "AdvisoryLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout

        while True:
            try:
                # timeout=0 means a single exclusive-create attempt
                self._lock.acquire(timeout=0)
                return self
            except Timeout:
                pass

            if self._remove_if_stale():
                continue

            if time.monotonic() >= deadline:
                logger.warning("Lock timeout after %.1fs: %s", self.timeout, self.lock_path)
                raise LockTimeout(str(self.lock_path), self.timeout)

            time.sleep(self.poll_interval)

    def release(self) -> None:
        self._lock.release()

    def __enter__(self) -> "AdvisoryLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def lock_age(self) -> Optional[float]:
        """Seconds since the current lock file was written, None if absent"""
        try:
            return time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _remove_if_stale(self) -> bool:
        """
        Take over an abandoned lock file.

        Returns True when the caller should retry right away (the lock was
        stale and removed, or it vanished while we were looking).
        """
        try:
            observed = self.lock_path.stat()
        except FileNotFoundError:
            return True
        if time.time() - observed.st_mtime <= self.timeout:
            return False
        return self._discard_stale(observed)

    def _discard_stale(self, observed: os.stat_result) -> bool:
        """Remove the lock file judged stale from ``observed``, and only that file"""
        grave = self.lock_path.with_name(f"{self.lock_path.name}.stale-{uuid.uuid4().hex}")
        try:
            if _identity(self.lock_path.stat()) != _identity(observed):
                return False
            os.rename(self.lock_path, grave)
        except FileNotFoundError:
            return True

        taken = grave.stat()
        age = time.time() - taken.st_mtime
        if _identity(taken) != _identity(observed) or age <= self.timeout:
            # Someone replaced the stale file with a live lock before our rename
            try:
                os.link(grave, self.lock_path)
            except FileExistsError:
                logger.warning("Could not restore live lock, path re-created: %s", self.lock_path)
            grave.unlink()
            return False

        logger.warning("Removing stale lock (%.1fs old): %s", age, self.lock_path)
        grave.unlink()
        return True
