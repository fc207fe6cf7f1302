"""Process-level run exclusivity through an advisory file lock."""

from __future__ import annotations

import errno
import fcntl
import logging
import os
from pathlib import Path
from typing import IO, Any

from .errors import LockBusy, LockError


logger = logging.getLogger(__name__)


class ExclusivityLock:
    """Handle for a held ``flock`` on the run lock file.

    ``release()`` is idempotent; use the handle as a context manager so the
    lock is dropped on every exit path.
    """

    def __init__(self, path: Path, handle: IO[Any]) -> None:
        self.path = path
        self._handle: IO[Any] | None = handle

    @property
    def held(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            logger.debug("unlock of %s failed: %s", self.path, exc)
        finally:
            handle.close()

    def __enter__(self) -> "ExclusivityLock":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


def acquire_lock(path: Path) -> ExclusivityLock:
    """Take an exclusive, non-blocking lock on ``path``.

    Raises ``LockBusy`` when another holder exists and ``LockError`` when the
    lock file cannot be opened.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
    except OSError as exc:
        raise LockError(f"cannot open lock file {path}: {exc}") from exc
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        handle.close()
        if exc.errno in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
            raise LockBusy(f"lock busy: {path}") from exc
        raise LockError(f"cannot lock {path}: {exc}") from exc
    try:
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
    except OSError as exc:
        logger.debug("could not record pid in %s: %s", path, exc)
    return ExclusivityLock(path, handle)
