"""Host-wide advisory lock for the registry document.

Every read-modify-write cycle on the registry runs under an exclusive
``flock`` on a sibling ``.lock`` file, so concurrent CLI invocations on the
same host serialize instead of overwriting each other. The kernel drops the
lock when the holding process exits, so a crashed command never leaves the
registry locked.

The lock is re-entrant within one ``RegistryLock`` instance: a transaction
that calls other registry methods does not deadlock on itself.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path

from vdc.errors import LockAcquisitionTimeout

logger = logging.getLogger(__name__)


class RegistryLock:
    """Exclusive file lock with bounded wait.

    Attributes:
        path: Lock file path
        timeout: Default time to wait for acquisition in seconds
        poll_interval: Delay between acquisition attempts
    """

    def __init__(self, path: Path, timeout: float = 30.0, poll_interval: float = 0.05):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: int | None = None
        self._depth = 0

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _try_lock(self, fd: int) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            return False

    @contextmanager
    def acquire(self, timeout: float | None = None):
        """Hold the lock for the duration of the block.

        Raises:
            LockAcquisitionTimeout: If the lock cannot be acquired within timeout
        """
        if self._fd is not None:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        wait = self.timeout if timeout is None else timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)

        start = time.monotonic()
        try:
            while not self._try_lock(fd):
                if time.monotonic() - start >= wait:
                    logger.warning(f"Registry lock {self.path} still held after {wait}s")
                    raise LockAcquisitionTimeout(str(self.path), wait)
                time.sleep(self.poll_interval)
        except BaseException:
            os.close(fd)
            raise

        self._fd = fd
        logger.debug(f"Acquired registry lock {self.path}")
        try:
            yield
        finally:
            self._fd = None
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            logger.debug(f"Released registry lock {self.path}")
