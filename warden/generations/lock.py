"""
Activation lock - one writer of generation state at a time.

An in-process threading.Lock plus an exclusive flock on
<state>/activation.lock, so separate CLI invocations and the daemon exclude
each other. Acquisition never blocks; callers report contention.
"""

import errno
import fcntl
import os
import threading
from pathlib import Path
from typing import Optional

from ..constants import Permissions


class ActivationLock:
    """Exclusive, non-blocking lock shared by threads and processes."""

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._thread_lock = threading.Lock()
        self._fd: Optional[int] = None

    def try_acquire(self) -> bool:
        if not self._thread_lock.acquire(blocking=False):
            return False
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, Permissions.SECURE_FILE)
        except OSError:
            self._thread_lock.release()
            raise
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            self._thread_lock.release()
            if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
                return False
            raise
        self._fd = fd
        return True

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        self._thread_lock.release()

    def locked(self) -> bool:
        return self._thread_lock.locked()


__all__ = ['ActivationLock']
