"""Batch commit — bulk index, then clear cached fragments, then destroy jobs."""

import logging
import time
from typing import Optional

import greenstalk
from opensearchpy.exceptions import OpenSearchException
from redis.exceptions import RedisError

from log_processor.broker import QueueBroker
from log_processor.cache import FragmentStore
from log_processor.metrics import WorkerMetrics
from log_processor.models import BatchItem
from log_processor.search_index import SearchIndex

logger = logging.getLogger(__name__)


class BatchCommitter:
    """Flush callback for the batch buffer.

    The index write is the durability point. If it fails nothing else is
    touched: the jobs stay in the queue and are redelivered once their
    release delay runs out. Cache deletes and job destroys afterwards are
    best-effort; a leftover key expires on its own and a leftover job is
    reprocessed into the same document id.
    """

    def __init__(
        self,
        index: SearchIndex,
        store: FragmentStore,
        destroyer: QueueBroker,
        metrics: Optional[WorkerMetrics] = None,
    ):
        self._index = index
        self._store = store
        self._destroyer = destroyer
        self._metrics = metrics or WorkerMetrics()

    def commit(self, batch: list[BatchItem]):
        if not batch:
            return

        start = time.monotonic()
        ids = [item.log_id for item in batch]
        logger.debug("Bulk inserting %d records: %s", len(batch), ids)
        try:
            rejected = self._index.bulk_index(batch)
        except OpenSearchException as exc:
            logger.error(
                "Bulk index of %d records failed, leaving jobs for redelivery: %s",
                len(batch), exc,
            )
            self._metrics.increment("index_failures")
            return

        committed = [item for item in batch if item.log_id not in rejected]
        self._metrics.increment("batches_flushed")
        self._metrics.increment("records_indexed", len(committed))
        self._metrics.increment("records_rejected", len(batch) - len(committed))

        self._delete_fragments(committed)
        self._destroy_jobs(committed)

        logger.info(
            "Committed batch of %d records (%d rejected) in %.1f ms",
            len(committed),
            len(batch) - len(committed),
            (time.monotonic() - start) * 1000,
        )

    def _delete_fragments(self, items: list[BatchItem]):
        try:
            self._store.delete_many([item.log_id for item in items])
        except RedisError as exc:
            logger.error("Bulk delete of %d cached fragments failed: %s", len(items), exc)
            self._metrics.increment("cleanup_failures")

    def _destroy_jobs(self, items: list[BatchItem]):
        for item in items:
            try:
                self._destroyer.delete(item.job)
            except (OSError, greenstalk.Error) as exc:
                logger.error(
                    "Failed to destroy job=%s log=%s: %s", item.job.id, item.log_id, exc
                )
                self._metrics.increment("cleanup_failures")
