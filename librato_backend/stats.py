"""Flush stats — thread-safe delivery counters exposed to status reporters."""

import threading
import time


class FlushStats:
    """Collects delivery outcomes and the last dispatch time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_flush: int | None = None
        self._batches_sent: int = 0
        self._measurements_sent: int = 0
        self._retries: int = 0
        self._failures: int = 0
        self._rejections: int = 0
        self._timeouts: int = 0

    def record_dispatch(self, now: float | None = None) -> None:
        """Mark that a request has just been handed to the network."""
        if now is None:
            now = time.time()
        with self._lock:
            self._last_flush = int(round(now))

    def record_success(self, measurements: int) -> None:
        with self._lock:
            self._batches_sent += 1
            self._measurements_sent += measurements

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1

    def record_rejection(self) -> None:
        with self._lock:
            self._rejections += 1

    def record_timeout(self) -> None:
        with self._lock:
            self._timeouts += 1

    @property
    def last_flush(self) -> int | None:
        with self._lock:
            return self._last_flush

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all stats.

        ``last_flush`` is only present once a request has been dispatched.
        """
        with self._lock:
            data = {
                "batches_sent": self._batches_sent,
                "measurements_sent": self._measurements_sent,
                "retries": self._retries,
                "failures": self._failures,
                "rejections": self._rejections,
                "timeouts": self._timeouts,
            }
            if self._last_flush is not None:
                data["last_flush"] = self._last_flush
            return data
