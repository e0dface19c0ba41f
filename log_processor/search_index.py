"""OpenSearch bulk indexing into per-month write indices."""

import logging
from datetime import datetime, timezone

from opensearchpy import OpenSearch, helpers

from log_processor.models import BatchItem

logger = logging.getLogger(__name__)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) as an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class SearchIndex:
    """Writes canonical records with overwrite-by-id semantics.

    Every record is routed to ``<prefix>-write-YYYY-MM`` for the month of
    its ``request_at``, so late records land in the month they describe.
    """

    def __init__(self, client: OpenSearch, prefix: str, document_type: str = ""):
        self._client = client
        self._prefix = prefix
        self._document_type = document_type

    @classmethod
    def from_config(cls, config) -> "SearchIndex":
        client = OpenSearch(
            hosts=list(config.opensearch_hosts),
            timeout=config.opensearch_timeout,
        )
        return cls(client, config.index_prefix, config.document_type)

    @property
    def client(self) -> OpenSearch:
        return self._client

    def ping(self):
        if not self._client.ping():
            raise ConnectionError("OpenSearch cluster did not answer ping")

    def index_name(self, record: dict) -> str:
        month = parse_timestamp(record["request_at"]).strftime("%Y-%m")
        return f"{self._prefix}-write-{month}"

    def build_actions(self, items: list[BatchItem]) -> list[dict]:
        actions = []
        for item in items:
            action = {
                "_op_type": "index",
                "_index": self.index_name(item.record),
                "_id": item.log_id,
                "_source": item.record,
            }
            if self._document_type:
                action["_type"] = self._document_type
            actions.append(action)
        return actions

    def bulk_index(self, items: list[BatchItem]) -> set:
        """Index *items* in one bulk request.

        Transport failures propagate. Returns the ids of documents the
        cluster rejected individually (empty set on full success).
        """
        if not items:
            return set()

        actions = self.build_actions(items)
        _, errors = helpers.bulk(
            self._client,
            actions,
            chunk_size=len(actions),
            raise_on_error=False,
            stats_only=False,
        )

        rejected = set()
        for error in errors:
            for op_result in error.values():
                rejected.add(op_result.get("_id"))
                logger.error(
                    "Document %s rejected by index %s (status=%s): %s",
                    op_result.get("_id"),
                    op_result.get("_index"),
                    op_result.get("status"),
                    op_result.get("error"),
                )
        return rejected

    def close(self):
        self._client.close()
