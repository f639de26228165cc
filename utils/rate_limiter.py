"""Token bucket rate limiter."""
import threading
import time


class RateLimiter:
    """Token bucket shared by all callers of one backend. Thread-safe.

    A bucket of ``calls_per_minute`` tokens refills continuously; ``wait``
    reserves a token and sleeps outside the lock until it is due.
    """

    def __init__(self, calls_per_minute):
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be positive")
        self.rate = calls_per_minute / 60.0
        self.max_tokens = float(calls_per_minute)
        self.tokens = self.max_tokens
        self.last_time = time.monotonic()
        self._lock = threading.Lock()

    def _refill(self, now):
        elapsed = now - self.last_time
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.rate)
        self.last_time = now

    def wait(self):
        """Block until a token is available. Returns the seconds slept."""
        with self._lock:
            self._refill(time.monotonic())
            self.tokens -= 1
            deficit = -self.tokens
        if deficit <= 0:
            return 0.0
        delay = deficit / self.rate
        time.sleep(delay)
        return delay
