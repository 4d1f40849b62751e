"""
Rate limiting. In-memory sliding window per key (e.g. per IP).
Used for interaction login POSTs and POST /token to slow down brute force and abuse.
"""
import math
import threading
import time


class SlidingWindowLimiter:
    def __init__(self, limit: int, window_seconds: int = 60):
        self.limit = limit
        self.window_seconds = window_seconds
        self._store: dict[str, list[float]] = {}
        self._last_sweep = time.monotonic()
        self._lock = threading.Lock()

    def check_and_consume(self, key: str) -> tuple[bool, int | None]:
        """
        Record one request for key if it is under the limit.
        Returns (allowed, retry_after_seconds); retry_after is >= 1 when not allowed.
        """
        if self.limit <= 0:
            return True, None
        now = time.monotonic()
        with self._lock:
            cutoff = now - self.window_seconds
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            timestamps = [t for t in self._store.get(key, ()) if t > cutoff]
            self._store[key] = timestamps
            if len(timestamps) >= self.limit:
                retry_after = max(1, math.ceil(self.window_seconds - (now - min(timestamps))))
                return False, retry_after
            timestamps.append(now)
            return True, None

    def _sweep(self, cutoff: float) -> None:
        # Keys with no request inside the window are dropped so idle clients do not accumulate
        for key in [k for k, ts in self._store.items() if not ts or ts[-1] <= cutoff]:
            del self._store[key]

    def reset(self) -> None:
        with self._lock:
            self._store.clear()
