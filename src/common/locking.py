"""
Advisory locking for backup registries.

A registry directory is guarded by an exclusive ``flock`` on
``<directory>/.lock``. Acquisition never waits: a lock held by another
process fails immediately with RegistryLockedError.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Union

from .exceptions import FileOperationError, RegistryLockedError

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"


class RegistryLock:
    """
    Re-entrant, non-blocking advisory lock scoped to one directory.

    Re-entrancy is per lock object: nested ``with`` blocks on the same
    instance share one ``flock``. A second instance for the same directory
    (in this or another process) is refused while the first is held.

    Example:
        lock = RegistryLock(registry_dir)
        with lock:
            with lock:  # nested use is fine
                ...
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.path = self.directory / LOCK_FILENAME
        self._fd: Optional[int] = None
        self._depth = 0
        self._guard = threading.RLock()

    @property
    def held(self) -> bool:
        return self._depth > 0

    def acquire(self) -> None:
        with self._guard:
            if self._depth:
                self._depth += 1
                return

            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
            except OSError as e:
                raise FileOperationError("lock", str(self.path), str(e), cause=e) from e

            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                os.close(fd)
                raise RegistryLockedError(str(self.directory)) from e
            except OSError as e:
                os.close(fd)
                raise FileOperationError("lock", str(self.path), str(e), cause=e) from e

            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            self._fd = fd
            self._depth = 1
            logger.debug(f"Acquired registry lock {self.path}")

    def release(self) -> None:
        with self._guard:
            if not self._depth:
                return
            self._depth -= 1
            if self._depth:
                return

            fd, self._fd = self._fd, None
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
            logger.debug(f"Released registry lock {self.path}")

    def __enter__(self) -> "RegistryLock":
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        self.release()
