"""
Single-operation lock for the panel updater.

Only one update, rollback, snapshot creation or snapshot deletion may touch
the application tree and the archive directory at a time. Acquisition never
waits: a second caller is rejected immediately with OperationInProgressError
and the holder is left untouched.

The in-process slot is a compare-and-swap guarded by a threading.Lock. When
a lock file is configured, an exclusive non-blocking ``flock`` on it also
keeps a CLI process and the server process from running pipelines at the
same time; the kernel releases it if the holding process dies.
"""

from __future__ import annotations

import fcntl
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from panel_updater.errors import InternalError, IOFailureError, OperationInProgressError
from panel_updater.logging import get_logger

logger = get_logger(__name__)

LOCK_FILE_NAME = ".operation.lock"


class OperationLock:
    """
    A non-blocking, single-slot lock naming the operation that holds it.

    Example:
        >>> lock = OperationLock()
        >>> lock.acquire("update")
        >>> lock.holder
        'update'
        >>> lock.release()
    """

    def __init__(self, lock_file: Path | str | None = None) -> None:
        """
        Initialize the lock.

        Args:
            lock_file: Optional path for the cross-process lock file.
        """
        self._guard = threading.Lock()
        self._holder: str | None = None
        self._lock_file = Path(lock_file) if lock_file else None
        self._fd: int | None = None

    @property
    def lock_file(self) -> Path | None:
        """Path of the cross-process lock file, if one is used."""
        return self._lock_file

    @property
    def holder(self) -> str | None:
        """Kind of the operation holding the lock, or None."""
        return self._holder

    @property
    def locked(self) -> bool:
        """Whether an operation holds the lock."""
        return self._holder is not None

    def acquire(self, kind: str) -> None:
        """
        Take the lock for an operation of the given kind.

        Raises:
            OperationInProgressError: If another operation holds the lock,
                in this process or (with a lock file) in another one.
            IOFailureError: If the lock file cannot be opened.
        """
        with self._guard:
            if self._holder is not None:
                raise OperationInProgressError(
                    f"An operation is already in progress ({self._holder})",
                    details={"running": self._holder, "requested": kind},
                )
            if self._lock_file is not None:
                self._fd = self._lock_other_processes(kind)
            self._holder = kind

        logger.info("Operation lock acquired", extra={"operation": kind})

    def release(self) -> None:
        """
        Release the lock.

        Raises:
            InternalError: If the lock is not held.
        """
        with self._guard:
            if self._holder is None:
                raise InternalError("Operation lock released while not held")
            kind = self._holder
            if self._fd is not None:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
                os.close(self._fd)
                self._fd = None
            self._holder = None

        logger.info("Operation lock released", extra={"operation": kind})

    @contextmanager
    def hold(self, kind: str) -> Iterator[None]:
        """Context manager form of acquire/release."""
        self.acquire(kind)
        try:
            yield
        finally:
            self.release()

    def _lock_other_processes(self, kind: str) -> int:
        assert self._lock_file is not None
        try:
            self._lock_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise IOFailureError(
                f"Cannot open operation lock file: {e}",
                details={"path": str(self._lock_file)},
            ) from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise OperationInProgressError(
                "An operation is already in progress in another process",
                details={"lock_file": str(self._lock_file), "requested": kind},
            ) from e

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()} {kind}\n".encode())
        return fd
