"""Per-job exclusive locks.

Applying an event to a check is a read-modify-write of one check row plus its
alerts. Holding the job's lock for the whole step keeps two concurrent
heartbeats for the same job from both reading a stale failure counter, while
different jobs never wait on each other.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class JobLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, job_name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(job_name)
            if lock is None:
                lock = threading.Lock()
                self._locks[job_name] = lock
            return lock

    @contextmanager
    def hold(self, job_name: str) -> Iterator[None]:
        with self._lock_for(job_name):
            yield
