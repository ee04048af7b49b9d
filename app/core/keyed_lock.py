import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLock:
    """One lock per key, so work for different principals never queues on a shared lock.

    Locks are reference counted and dropped once no caller holds or waits on them.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._guard = threading.Lock()  # only protects the two dicts above

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
