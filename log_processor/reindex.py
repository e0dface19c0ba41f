"""Backfill ``request_hierarchy`` on historical log documents."""

import logging
import time

from opensearchpy import OpenSearch, helpers

from log_processor.cleaner import apply_url_fields

logger = logging.getLogger(__name__)

MISSING_HIERARCHY_QUERY = {
    "query": {
        "bool": {
            "must_not": {"exists": {"field": "request_hierarchy"}},
        },
    },
}


def _rewrite_action(hit: dict) -> dict:
    return {
        "_op_type": "index",
        "_index": hit["_index"],
        "_id": hit["_id"],
        "_source": apply_url_fields(hit["_source"]),
    }


def reindex_index(
    client: OpenSearch,
    index_name: str,
    page_size: int = 5000,
    scroll: str = "5m",
    dry_run: bool = False,
) -> int:
    """Rewrite every document in *index_name* that lacks a hierarchy. Returns the count."""
    count = 0
    pending: list[dict] = []
    hits = helpers.scan(
        client,
        index=index_name,
        query=MISSING_HIERARCHY_QUERY,
        size=page_size,
        scroll=scroll,
    )
    for hit in hits:
        pending.append(_rewrite_action(hit))
        count += 1
        if len(pending) >= page_size:
            _write(client, pending, dry_run)
            logger.info("  %s: rewrote %d documents so far", index_name, count)
            pending = []

    if pending:
        _write(client, pending, dry_run)
    return count


def _write(client: OpenSearch, actions: list[dict], dry_run: bool):
    if dry_run:
        return
    start = time.monotonic()
    helpers.bulk(client, actions, chunk_size=len(actions), request_timeout=120)
    logger.debug(
        "Indexed %d documents in %.1fs", len(actions), time.monotonic() - start
    )


def reindex_url_hierarchy(
    client: OpenSearch,
    prefix: str,
    page_size: int = 5000,
    dry_run: bool = False,
) -> dict:
    """Backfill every ``<prefix>-*`` index. Returns ``{index_name: rewritten}``."""
    index_names = sorted(client.indices.get_alias(index="*").keys())
    results = {}
    for index_name in index_names:
        if not index_name.startswith(f"{prefix}-"):
            logger.info("Skipping unrelated index: %s", index_name)
            continue
        logger.info("Migrating index: %s", index_name)
        results[index_name] = reindex_index(
            client, index_name, page_size=page_size, dry_run=dry_run
        )
        logger.info("Finished %s: %d documents", index_name, results[index_name])
    return results
