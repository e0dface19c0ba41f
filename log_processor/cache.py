"""Redis-backed store of the raw per-stage log fragments."""

import json
import logging

import redis

from log_processor.errors import InvalidLogError
from log_processor.models import FRAGMENT_NAMES, LogFragments, cache_key

logger = logging.getLogger(__name__)


class FragmentStore:
    """Reads fragment hashes (``log:<id>``) and deletes them after indexing."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_config(cls, config) -> "FragmentStore":
        client = redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            decode_responses=True,
        )
        return cls(client)

    def ping(self):
        self._redis.ping()

    def fetch(self, log_id: str) -> LogFragments:
        """Fetch and decode all fragments for *log_id*.

        An expired or never-written key yields an empty LogFragments.
        Undecodable JSON raises InvalidLogError.
        """
        raw = self._redis.hgetall(cache_key(log_id)) or {}
        fragments = LogFragments()
        for name in FRAGMENT_NAMES:
            value = raw.get(name)
            if not value:
                continue
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError as exc:
                raise InvalidLogError(
                    f"Could not decode {name} fragment: {exc}"
                ) from exc
            if not isinstance(decoded, dict):
                raise InvalidLogError(f"{name} fragment is not an object")
            setattr(fragments, name, decoded)

        logger.debug("Fetched fragments for %s: %s", log_id, fragments.presence())
        return fragments

    def delete_many(self, log_ids: list[str]):
        """Delete fragment hashes in a single MULTI/EXEC transaction."""
        if not log_ids:
            return
        pipe = self._redis.pipeline(transaction=True)
        for log_id in log_ids:
            pipe.delete(cache_key(log_id))
        pipe.execute()

    def close(self):
        self._redis.close()
