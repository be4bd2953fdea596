"""Advisory inter-process locks for attoplan state files.

Each shared state file (the plan index, the capacity registry) is guarded
by a hidden sibling lock file, ``.<name>.lock``, held with ``flock``.
Acquisition polls so that a wedged process turns into a
:class:`~attoplan.errors.LockTimeoutError` instead of a hang.
"""

from __future__ import annotations

import contextlib
import fcntl
import time
from pathlib import Path
from typing import Iterator

from attoplan.errors import LockTimeoutError

LOCK_SUFFIX = ".lock"
DEFAULT_LOCK_TIMEOUT = 30.0
_POLL_INTERVAL = 0.05


def lock_path_for(path: Path) -> Path:
    """Lock file guarding the state file *path*."""
    return path.with_name(f".{path.name}{LOCK_SUFFIX}")


@contextlib.contextmanager
def locked_file(path: Path, *, timeout: float | None = DEFAULT_LOCK_TIMEOUT) -> Iterator[None]:
    """Hold an exclusive lock on *path* (created if needed) for the block.

    With ``timeout=None`` this blocks until the lock is free.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        _acquire(handle.fileno(), path, timeout)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextlib.contextmanager
def locked_state(path: Path, *, timeout: float | None = DEFAULT_LOCK_TIMEOUT) -> Iterator[Path]:
    """Lock the state file *path* through its lock file and yield *path*."""
    with locked_file(lock_path_for(path), timeout=timeout):
        yield path


def _acquire(fd: int, path: Path, timeout: float | None) -> None:
    if timeout is None:
        fcntl.flock(fd, fcntl.LOCK_EX)
        return
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except BlockingIOError:
            if time.monotonic() >= deadline:
                raise LockTimeoutError(str(path), timeout) from None
            time.sleep(_POLL_INTERVAL)
