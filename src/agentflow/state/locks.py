from __future__ import annotations

import fcntl
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from agentflow.errors import PersistenceError


class SessionLockRegistry:
    """Lazily created mutex per session id.

    Locks are never removed from the registry, so two callers asking for the
    same session always contend on the same object.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def hold(self, session_id: str, timeout_seconds: float = 5.0) -> Iterator[None]:
        lock = self.lock_for(session_id)
        if not lock.acquire(timeout=timeout_seconds):
            raise PersistenceError(f"Timed out waiting for session lock: {session_id}")
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@contextmanager
def file_lock(
    lock_file: Path,
    *,
    timeout_seconds: float = 5.0,
    poll_seconds: float = 0.02,
) -> Iterator[None]:
    """Exclusive ``flock`` on ``lock_file`` for callers in other processes.

    The lock file itself stays on disk. The kernel drops the lock when its
    holder exits, so a crashed process never leaves the session locked.
    """
    try:
        handle = lock_file.open("a+b")
    except OSError as exc:
        raise PersistenceError(f"Cannot open lock file {lock_file}: {exc}") from exc
    deadline = time.monotonic() + timeout_seconds
    try:
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError as exc:
                if time.monotonic() >= deadline:
                    raise PersistenceError(f"Timed out waiting for lock file {lock_file}") from exc
                time.sleep(poll_seconds)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()
