"""Batch buffer — collects processed records and flushes on size or time threshold."""

import threading
import time
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class BatchBuffer:
    """Thread-safe buffer drained by a dedicated flusher thread.

    A flush is due when the buffer holds at least ``batch_size`` items or
    ``flush_interval`` seconds have passed since the batch window opened.
    The window opens when an item lands in an empty buffer and again at
    every flush, so an item waits at most one interval no matter how
    long the buffer sat idle before it arrived.

    Each flush takes at most ``batch_size`` of the oldest items, and only
    one flush runs at a time, so a slow consumer lets ``pending_count``
    grow. Callers use that count for backpressure.

    Items are snapshotted and removed under the lock; the on_flush
    callback always runs OUTSIDE it so producers never wait on I/O.
    """

    def __init__(
        self,
        batch_size: int,
        flush_interval: float,
        on_flush: Callable[[list], None],
        shutdown_event: threading.Event,
    ):
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._on_flush = on_flush
        self._shutdown = shutdown_event

        self._buffer: list = []
        self._cond = threading.Condition()
        self._flush_lock = threading.Lock()
        self._window_start = time.monotonic()
        self._poll_interval = min(1.0, flush_interval)

        self._flusher = threading.Thread(
            target=self._flush_loop, name="batch-flusher", daemon=True
        )
        self._flusher.start()

    # Public API

    def add(self, item):
        """Append an item. Wakes the flusher on the first item and on a full batch."""
        with self._cond:
            if not self._buffer:
                self._window_start = time.monotonic()
                self._cond.notify_all()
            self._buffer.append(item)
            if len(self._buffer) >= self._batch_size:
                self._cond.notify_all()

    def flush(self) -> int:
        """Flush one batch now, in the calling thread. Returns its size."""
        with self._flush_lock:
            with self._cond:
                batch = self._buffer[: self._batch_size]
                del self._buffer[: self._batch_size]
                self._window_start = time.monotonic()

            if batch:
                self._safe_flush(batch)
            return len(batch)

    def stop(self) -> int:
        """Stop the flusher thread and discard whatever is still buffered.

        Returns the number of discarded items; their jobs are redelivered
        by the queue.
        """
        self._shutdown.set()
        with self._cond:
            self._cond.notify_all()
        self._flusher.join(timeout=5)

        with self._cond:
            dropped = len(self._buffer)
            self._buffer.clear()
        if dropped:
            logger.info("Discarded %d unflushed records on shutdown", dropped)
        return dropped

    @property
    def pending_count(self) -> int:
        """Number of items waiting in the buffer (not yet being flushed)."""
        with self._cond:
            return len(self._buffer)

    # Internal helpers

    def _flush_due(self) -> bool:
        if self._shutdown.is_set():
            return True
        if len(self._buffer) >= self._batch_size:
            return True
        return bool(self._buffer) and self._time_left() <= 0

    def _time_left(self) -> float:
        return self._window_start + self._flush_interval - time.monotonic()

    def _flush_loop(self):
        """Background thread that waits for a full batch or the interval."""
        while not self._shutdown.is_set():
            with self._cond:
                if not self._flush_due():
                    timeout = self._poll_interval
                    if self._buffer:
                        timeout = min(timeout, max(self._time_left(), 0.0))
                    self._cond.wait(timeout=timeout)
                due = self._flush_due()

            if due and not self._shutdown.is_set():
                self.flush()

    def _safe_flush(self, batch: list):
        """Invoke the on_flush callback with error handling so that a
        failing callback never kills the flusher thread."""
        try:
            self._on_flush(batch)
            logger.debug("Flushed batch of %d entries", len(batch))
        except Exception:
            logger.exception(
                "on_flush callback failed for batch of %d entries", len(batch)
            )
