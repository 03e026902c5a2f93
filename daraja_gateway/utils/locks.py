import threading
from contextlib import contextmanager
from typing import Any, Dict


class KeyedLock:
    """
    One ``threading.Lock`` per key, created on demand.

    Used for per-merchant token refreshes and per-transaction writes so
    unrelated keys never contend.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Any, threading.Lock] = {}

    def get(self, key) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key):
        lock = self.get(key)
        with lock:
            yield
