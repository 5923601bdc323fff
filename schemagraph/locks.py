"""Per-repository mutual exclusion for crawls and checkouts."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from filelock import FileLock, Timeout

from .config import ensure_state_dir
from .errors import OperationTimeout

logger = logging.getLogger(__name__)

LOCK_FILENAME = "schemagraph.lock"

_registry_lock = threading.Lock()
_locks: Dict[Path, "RepositoryLock"] = {}


def repository_root(path: Path) -> Path:
    """Closest directory at or above *path* holding a ``.git`` entry, else *path*."""
    resolved = Path(path).resolve()
    for candidate in (resolved, *resolved.parents):
        if (candidate / ".git").exists():
            return candidate
    return resolved


def lock_file_for(root: Path) -> Path:
    git_dir = root / ".git"
    if git_dir.is_dir():
        return git_dir / LOCK_FILENAME
    return ensure_state_dir(root) / LOCK_FILENAME


class RepositoryLock:
    """Exclusive access to one working tree.

    A thread lock orders callers inside this process and an advisory lock
    file excludes other processes.

    Obtain instances through :meth:`for_path` so that every caller touching
    the same repository shares the same lock, whichever subdirectory it was
    given.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._file_lock: Optional[FileLock] = None

    @classmethod
    def for_path(cls, path: Path) -> "RepositoryLock":
        root = repository_root(path)
        with _registry_lock:
            lock = _locks.get(root)
            if lock is None:
                lock = cls(root)
                _locks[root] = lock
            return lock

    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def lock_file(self) -> Path:
        return lock_file_for(self.path)

    @contextmanager
    def hold(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            OperationTimeout: if the lock is not acquired within *timeout*.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        acquired = self._lock.acquire(timeout=timeout if timeout is not None else -1)
        if not acquired:
            raise OperationTimeout(f"waiting for exclusive access to {self.path}", timeout)
        try:
            if self._file_lock is None:
                self._file_lock = FileLock(str(self.lock_file))
            remaining = -1 if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                self._file_lock.acquire(timeout=remaining)
            except Timeout as exc:
                raise OperationTimeout(f"waiting for exclusive access to {self.path}", timeout) from exc
            logger.debug("Acquired repository lock for %s", self.path)
            try:
                yield
            finally:
                self._file_lock.release()
                logger.debug("Released repository lock for %s", self.path)
        finally:
            self._lock.release()
