"""Per-repository serialization of version control writes.

Workflows for different repositories commit concurrently. Phases that share
a repository take turns, since git's index does not accept concurrent writers.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class RepositoryLocks:
    """One re-entrant lock per resolved repository path."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    @staticmethod
    def _key(repository_path: str | Path) -> str:
        return str(Path(repository_path).expanduser().resolve())

    def lock_for(self, repository_path: str | Path) -> threading.RLock:
        key = self._key(repository_path)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    def run(self, repository_path: str | Path, operation: Callable[[], T], label: str = "git operation") -> T:
        """Run `operation` while holding the lock of `repository_path`.

        Exceptions from the operation are logged and re-raised.
        """
        lock = self.lock_for(repository_path)
        logger.debug("Waiting for {} lock on {}", label, repository_path)
        with lock:
            try:
                return operation()
            except Exception as exc:
                logger.error("{} failed in {}: {}", label, repository_path, exc)
                raise


_shared_locks = RepositoryLocks()


def shared_repository_locks() -> RepositoryLocks:
    """Return the registry used by every executor in this process."""
    return _shared_locks
