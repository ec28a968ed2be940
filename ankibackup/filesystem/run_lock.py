"""Process-wide run lock serializing ticks and rollbacks.

Two layers: an ``asyncio.Lock`` orders tasks inside this process, and an
exclusive ``flock`` on ``state/run.lock`` keeps a second daemon (or a
``run-once`` invocation) from interleaving with us. The kernel drops the
``flock`` when the holder dies, so a crash never leaves a stale lock.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from ankibackup.exceptions import LockHeld, StorageFailure

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)


class RunLock:
    """Exclusive lock spanning one whole tick or one whole rollback."""

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._lock = asyncio.Lock()
        self._fd: int | None = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def try_acquire(self) -> bool:
        """Acquire without waiting. Returns False if anyone holds the lock."""
        if self._lock.locked():
            return False
        await self._lock.acquire()
        if not self._file_lock_or_release():
            return False
        return True

    async def acquire(self) -> None:
        """Wait for in-process holders, then take the file lock.

        Raises ``LockHeld`` if another process holds the file lock and
        ``StorageFailure`` if the lock file cannot be opened.
        """
        await self._lock.acquire()
        if not self._file_lock_or_release():
            raise LockHeld("Another process holds the run lock")

    def release(self) -> None:
        if self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None
        self._lock.release()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def _file_lock_or_release(self) -> bool:
        """Take the file lock, or give the in-process lock back on any failure."""
        try:
            locked = self._try_file_lock()
        except BaseException:
            self._lock.release()
            raise
        if not locked:
            self._lock.release()
        return locked

    def _try_file_lock(self) -> bool:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise StorageFailure(f"Cannot open run lock {self.lock_path}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            logger.info("Run lock %s is held by another process", self.lock_path)
            return False
        except OSError as exc:
            os.close(fd)
            raise StorageFailure(f"Cannot lock {self.lock_path}: {exc}") from exc
        self._fd = fd
        return True
