"""
Target-Set Locking

Single-flight exclusion for everything that mutates one target set: the
scheduled backup job and the update transaction take the same advisory
lock file, so a backup can never run while an update rewrites the tree.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional, Union

from .exceptions import LockUnavailableError

logger = logging.getLogger(__name__)


class TargetLock:
    """
    Exclusive ``flock`` advisory lock on a per-target-set lock file.

    The lock is released by the kernel when the process dies, so a killed
    run never leaves a stale lock behind.

    Example:
        with TargetLock("/run/cinepi5/cinepi5.lock"):
            archiver.run(...)

    Args:
        path: Lock file path (created if missing)
        blocking: Wait for the lock instead of failing immediately
        timeout: Maximum seconds to wait when blocking (None waits forever)
        poll_interval: Seconds between attempts while waiting
    """

    def __init__(
        self,
        path: Union[str, Path],
        blocking: bool = False,
        timeout: Optional[float] = None,
        poll_interval: float = 0.1,
    ):
        self.path = Path(path)
        self.blocking = blocking
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: Optional[int] = None
        self._guard = threading.Lock()

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """
        Acquire the lock.

        Raises:
            LockUnavailableError: If another holder has it and we are not
                waiting, or the wait timed out.
        """
        with self._guard:
            if self._fd is not None:
                raise RuntimeError(f"Lock {self.path} is not reentrant")

            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            deadline = None
            if self.blocking and self.timeout is not None:
                deadline = time.monotonic() + self.timeout

            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if not self.blocking or (
                        deadline is not None and time.monotonic() >= deadline
                    ):
                        os.close(fd)
                        raise LockUnavailableError(str(self.path))
                    time.sleep(self.poll_interval)

            # Holder PID is informational only; the flock is what excludes
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            self._fd = fd
            logger.debug(f"Acquired lock {self.path}")

    def release(self) -> None:
        """Release the lock if held."""
        with self._guard:
            if self._fd is None:
                return
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None
            logger.debug(f"Released lock {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *args):
        self.release()
