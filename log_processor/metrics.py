"""Thread-safe operational counters for the worker."""

import threading
import time

COUNTERS = (
    "jobs_reserved",
    "jobs_queued",
    "jobs_accepted_incomplete",
    "jobs_retried",
    "jobs_buried",
    "records_indexed",
    "records_rejected",
    "batches_flushed",
    "index_failures",
    "cleanup_failures",
    "reserve_errors",
    "reconnects",
)


class WorkerMetrics:
    """Counters shared by the reservation loop and the flusher thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {name: 0 for name in COUNTERS}
        self._start_time = time.monotonic()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict:
        """Point-in-time copy of all counters plus uptime."""
        with self._lock:
            data = dict(self._counters)
        data["uptime_seconds"] = round(time.monotonic() - self._start_time, 1)
        return data
