"""Beanstalkd work-queue connection with lazy reconnect and reconnect listeners."""

import logging
import threading
import time
from typing import Callable, Optional

import greenstalk

logger = logging.getLogger(__name__)


class QueueBroker:
    """Thin wrapper around a single greenstalk client.

    greenstalk connections are not thread-safe and do not reconnect on
    their own, so each QueueBroker owns one socket and is meant to be
    used from one thread. Job bodies are returned as raw bytes. When a command fails with a connection error
    the socket is dropped; the next command opens a fresh one and every
    registered reconnect listener is notified.
    """

    def __init__(
        self,
        host: str,
        port: int,
        tube: str,
        name: str = "reserve",
        reconnect_delay: float = 1.0,
    ):
        self._address = (host, port)
        self._tube = tube
        self._name = name
        self._client: Optional[greenstalk.Client] = None
        self._ever_connected = False
        self._listeners: list[Callable[[], None]] = []
        self._reconnect_delay = reconnect_delay
        self._next_attempt = 0.0
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def add_reconnect_listener(self, callback: Callable[[], None]):
        self._listeners.append(callback)

    def connect(self):
        """Open the connection. Raises OSError / greenstalk.Error on failure."""
        with self._lock:
            if self._client is not None:
                return
            try:
                self._client = greenstalk.Client(
                    self._address, encoding=None, use=self._tube, watch=self._tube
                )
            except OSError:
                self._next_attempt = time.monotonic() + self._reconnect_delay
                raise
            reconnected = self._ever_connected
            self._ever_connected = True

        logger.info(
            "Connected %s queue connection to %s:%d (tube=%s)",
            self._name, self._address[0], self._address[1], self._tube,
        )
        if reconnected:
            for callback in self._listeners:
                callback()

    def close(self):
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except OSError:
                logger.debug("Error closing %s queue connection", self._name)

    # Commands

    def reserve(self, timeout: Optional[int] = None) -> Optional[greenstalk.Job]:
        """Reserve the next job, or return None if *timeout* elapses first."""
        try:
            return self._call("reserve", timeout=timeout)
        except greenstalk.TimedOutError:
            return None

    def release(self, job: greenstalk.Job, priority: int, delay: int):
        self._call("release", job, priority=priority, delay=delay)

    def bury(self, job: greenstalk.Job, priority: int):
        self._call("bury", job, priority=priority)

    def delete(self, job: greenstalk.Job):
        self._call("delete", job)

    def release_count(self, job: greenstalk.Job) -> int:
        """Number of times the broker has seen this job released."""
        stats = self._call("stats_job", job)
        releases = stats.get("releases")
        if not isinstance(releases, int):
            raise ValueError(f"Unexpected job stats: {stats!r}")
        return releases

    def _call(self, command: str, *args, **kwargs):
        if self._client is None:
            # Pace reconnect attempts while the broker is down.
            wait = self._next_attempt - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self.connect()
        try:
            return getattr(self._client, command)(*args, **kwargs)
        except OSError:
            logger.warning(
                "%s queue connection lost during %s", self._name, command
            )
            self.close()
            raise
