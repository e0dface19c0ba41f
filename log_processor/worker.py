"""Log processor worker — reserves jobs and drives them through the pipeline."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

import greenstalk
from opensearchpy.exceptions import OpenSearchException
from redis.exceptions import RedisError

from log_processor.assembler import RecordAssembler
from log_processor.batch_buffer import BatchBuffer
from log_processor.broker import QueueBroker
from log_processor.cache import FragmentStore
from log_processor.cleaner import clean_log
from log_processor.committer import BatchCommitter
from log_processor.config import WorkerConfig
from log_processor.errors import ConnectionSetupError, ProcessingError
from log_processor.metrics import WorkerMetrics
from log_processor.models import BatchItem
from log_processor.retry import RetryManager
from log_processor.search_index import SearchIndex

logger = logging.getLogger(__name__)

FINISH_PRIORITY = 0


@dataclass
class Connections:
    """Handles to the external stores, created once at startup.

    Reservation blocks for long periods, so job destroys issued by the
    flusher thread go through a second queue connection.
    """

    reserver: QueueBroker
    destroyer: QueueBroker
    store: FragmentStore
    index: SearchIndex

    @classmethod
    def from_config(cls, config: WorkerConfig) -> "Connections":
        return cls(
            reserver=QueueBroker(
                config.beanstalk_host, config.beanstalk_port,
                config.beanstalk_tube, name="reserve",
            ),
            destroyer=QueueBroker(
                config.beanstalk_host, config.beanstalk_port,
                config.beanstalk_tube, name="destroy",
            ),
            store=FragmentStore.from_config(config),
            index=SearchIndex.from_config(config),
        )

    def verify(self):
        """Open every connection. Raises ConnectionSetupError on the first failure."""
        steps = (
            ("redis", self.store.ping),
            ("opensearch", self.index.ping),
            ("beanstalk reserve", self.reserver.connect),
            ("beanstalk destroy", self.destroyer.connect),
        )
        for name, step in steps:
            try:
                step()
            except (OSError, RedisError, OpenSearchException, greenstalk.Error) as exc:
                raise ConnectionSetupError(f"Could not connect to {name}: {exc}") from exc

    def close(self):
        self.reserver.close()
        self.destroyer.close()
        self.store.close()
        self.index.close()


class Worker:
    """Single-threaded reservation loop feeding a background batch flusher.

    Exactly one job is between reserve and enqueue at any time. The loop
    stops reserving while the batch buffer is at the high-water mark.
    """

    def __init__(
        self,
        config: WorkerConfig,
        connections: Connections,
        shutdown_event: threading.Event,
        metrics: Optional[WorkerMetrics] = None,
    ):
        self._config = config
        self._conn = connections
        self._shutdown = shutdown_event
        self._metrics = metrics or WorkerMetrics()
        self._retry = RetryManager(
            connections.reserver,
            base_delay=config.retry_base_delay,
            max_attempts=config.max_attempts,
            fallback_attempts=config.stats_fallback_attempts,
            metrics=self._metrics,
        )
        self._assembler = RecordAssembler(
            connections.store,
            self._retry,
            accept_attempts=config.incomplete_accept_attempts,
            metrics=self._metrics,
        )
        self._committer = BatchCommitter(
            connections.index,
            connections.store,
            connections.destroyer,
            metrics=self._metrics,
        )
        self._buffer: Optional[BatchBuffer] = None
        self._last_metrics_log = time.monotonic()
        connections.reserver.add_reconnect_listener(self._handle_reconnect)

    @property
    def metrics(self) -> WorkerMetrics:
        return self._metrics

    @property
    def buffer(self) -> Optional[BatchBuffer]:
        return self._buffer

    def start(self):
        """Start the batch flusher. Connections must already be verified."""
        if self._buffer is None:
            self._buffer = BatchBuffer(
                batch_size=self._config.batch_size,
                flush_interval=self._config.flush_interval,
                on_flush=self._committer.commit,
                shutdown_event=self._shutdown,
            )

    def run(self):
        """Reserve and process jobs until the shutdown event is set."""
        self.start()
        logger.info(
            "Worker started (batch_size=%d, flush_interval=%.1fs, high_water_mark=%d)",
            self._config.batch_size,
            self._config.flush_interval,
            self._config.high_water_mark,
        )
        try:
            while not self._shutdown.is_set():
                self.reserve_once()
                self._maybe_log_metrics()
        finally:
            self.close()

    def reserve_once(self) -> bool:
        """Wait for buffer capacity, reserve one job and process it.

        Returns False when no job was processed (shutdown, timeout, or a
        reservation error).
        """
        if not self.wait_for_capacity():
            return False

        try:
            job = self._conn.reserver.reserve(timeout=self._config.reserve_timeout)
        except (OSError, greenstalk.Error) as exc:
            logger.error("Queue reserve error: %s", exc)
            self._metrics.increment("reserve_errors")
            return False
        except Exception:
            logger.exception("Unexpected queue reserve error")
            self._metrics.increment("reserve_errors")
            return False

        if job is None:
            return False

        self._metrics.increment("jobs_reserved")
        self.handle_job(job)
        return True

    def wait_for_capacity(self) -> bool:
        """Block while the buffer is at the high-water mark. False on shutdown."""
        while self._buffer.pending_count >= self._config.high_water_mark:
            if self._shutdown.wait(timeout=self._config.backpressure_poll):
                return False
        return not self._shutdown.is_set()

    def handle_job(self, job: greenstalk.Job):
        """Run the pipeline for *job*, handing failures to the retry manager."""
        body = job.body
        # An undecodable id cannot match a cache key; it fails assembly and
        # goes through the normal retry and bury path.
        log_id = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
        log_id = log_id.strip()
        try:
            self.process_log(job, log_id)
        except ProcessingError as exc:
            self._retry.report_failure(job, log_id, exc.reason)
        except Exception as exc:
            logger.exception("Unexpected error processing log=%s job=%s", log_id, job.id)
            self._retry.report_failure(job, log_id, repr(exc))

    def process_log(self, job: greenstalk.Job, log_id: str):
        """fetch -> check -> clean -> enqueue. Any step raising stops the chain."""
        logger.debug("Processing log=%s job=%s", log_id, job.id)
        fragments = self._assembler.assemble(job, log_id)
        record = clean_log(fragments, self._config.api_key_methods)
        # beanstalkd only lets the reserving connection delete a reserved
        # job, so release it before the flusher can try to destroy it.
        self.finish_job(job)
        self._buffer.add(BatchItem(job=job, log_id=log_id, record=record))
        self._metrics.increment("jobs_queued")

    def finish_job(self, job: greenstalk.Job):
        """Release the job with a long delay; a committed batch destroys it
        before the delay runs out, otherwise it is simply redelivered."""
        try:
            self._conn.reserver.release(
                job, priority=FINISH_PRIORITY, delay=self._config.finish_delay
            )
        except (OSError, greenstalk.Error) as exc:
            logger.error("Queue release error for job=%s: %s", job.id, exc)

    def close(self):
        """Stop the flusher without draining and close all connections."""
        if self._buffer is not None:
            self._buffer.stop()
        self._conn.close()
        logger.info("Worker metrics: %s", self._metrics.snapshot())

    def _handle_reconnect(self):
        self._metrics.increment("reconnects")
        logger.info("Queue connection re-established, resuming reservations")

    def _maybe_log_metrics(self):
        now = time.monotonic()
        if now - self._last_metrics_log >= self._config.metrics_interval:
            self._last_metrics_log = now
            logger.info("Worker metrics: %s", self._metrics.snapshot())
