"""Retry scheduling, exponential backoff, and burying of exhausted jobs."""

import logging
from typing import Optional

import greenstalk

from log_processor.broker import QueueBroker
from log_processor.metrics import WorkerMetrics

logger = logging.getLogger(__name__)

RETRY_PRIORITY = 100
BURY_PRIORITY = 200
WARN_ATTEMPTS = 3


class RetryManager:
    """Decides between release-with-backoff and bury for a failed job.

    The broker's per-job release counter is the only attempt count; no
    local bookkeeping is kept, so a restarted worker sees the same
    history.
    """

    def __init__(
        self,
        broker: QueueBroker,
        base_delay: int = 4,
        max_attempts: int = 10,
        fallback_attempts: int = 8,
        metrics: Optional[WorkerMetrics] = None,
    ):
        self._broker = broker
        self._base_delay = base_delay
        self._max_attempts = max_attempts
        self._fallback_attempts = fallback_attempts
        self._metrics = metrics or WorkerMetrics()

    def attempts(self, job: greenstalk.Job, log_id: str) -> Optional[int]:
        """Return the job's release count, or None if the broker can't say."""
        try:
            return self._broker.release_count(job)
        except (OSError, ValueError, greenstalk.Error) as exc:
            logger.error(
                "Failed to fetch job stats for job=%s log=%s: %s",
                job.id, log_id, exc,
            )
            return None

    def backoff_delay(self, attempts: int) -> int:
        """Seconds to wait before redelivery: 4, 8, 16, 32, ..."""
        return self._base_delay * (2 ** attempts)

    def should_bury(self, attempts: int) -> bool:
        return attempts >= self._max_attempts

    def report_failure(self, job: greenstalk.Job, log_id: str, reason: str) -> str:
        """Release *job* with backoff or bury it. Returns "released" or "buried"."""
        attempts = self.attempts(job, log_id)
        if attempts is None:
            # High enough to back off for a while, low enough not to bury.
            attempts = self._fallback_attempts
            logger.warning(
                "Assuming %d failed attempts for job=%s log=%s",
                attempts, job.id, log_id,
            )

        if self.should_bury(attempts):
            logger.error(
                "Log processing failed too many times - burying permanently "
                "(log=%s job=%s attempts=%d reason=%s)",
                log_id, job.id, attempts, reason,
            )
            try:
                self._broker.bury(job, priority=BURY_PRIORITY)
            except (OSError, greenstalk.Error) as exc:
                logger.error("Failed to bury job=%s: %s", job.id, exc)
            self._metrics.increment("jobs_buried")
            return "buried"

        delay = self.backoff_delay(attempts)
        level = logging.WARNING if attempts >= WARN_ATTEMPTS else logging.INFO
        logger.log(
            level,
            "Log processing failed - scheduling retry in %ds "
            "(log=%s job=%s attempts=%d reason=%s)",
            delay, log_id, job.id, attempts, reason,
        )
        try:
            self._broker.release(job, priority=RETRY_PRIORITY, delay=delay)
        except (OSError, greenstalk.Error) as exc:
            logger.error("Failed to release job=%s: %s", job.id, exc)
        self._metrics.increment("jobs_retried")
        return "released"
