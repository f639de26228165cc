"""Per-key mutual exclusion."""
import threading
from contextlib import contextmanager


class KeyedLock:
    """Hands out one lock per key, dropping it once nobody holds or waits.

    Thread-safe. Used to serialize mutations of a single alert fingerprint
    without blocking unrelated fingerprints.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)
