"""Shared fixtures: in-memory stand-ins for the queue, cache, and index."""

import threading
from unittest.mock import MagicMock

import greenstalk
import pytest
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError
from redis.exceptions import ConnectionError as RedisConnectionError

from log_processor.config import WorkerConfig
from log_processor.models import LogFragments
from log_processor.search_index import SearchIndex
from log_processor.worker import Connections, Worker


class FakeBroker:
    """Records queue commands; jobs are fed in through ``put``."""

    def __init__(self):
        self.ready: list[greenstalk.Job] = []
        self.releases: dict[int, int] = {}
        self.released: list[tuple] = []
        self.buried: list[tuple] = []
        self.deleted: list[int] = []
        self.fail_stats = False
        self.fail_delete_ids: set = set()
        self.fail_reserve = 0
        self.listeners = []
        self._next_id = 1

    def put(self, body: str, releases: int = 0) -> greenstalk.Job:
        job = greenstalk.Job(self._next_id, body)
        self._next_id += 1
        self.releases[job.id] = releases
        self.ready.append(job)
        return job

    def add_reconnect_listener(self, callback):
        self.listeners.append(callback)

    def connect(self):
        pass

    def close(self):
        pass

    def reserve(self, timeout=None):
        if self.fail_reserve:
            self.fail_reserve -= 1
            raise ConnectionResetError("broker went away")
        if not self.ready:
            return None
        return self.ready.pop(0)

    def release(self, job, priority, delay):
        self.releases[job.id] = self.releases.get(job.id, 0) + 1
        self.released.append((job.id, priority, delay))

    def bury(self, job, priority):
        self.buried.append((job.id, priority))

    def delete(self, job):
        if job.id in self.fail_delete_ids:
            raise greenstalk.NotFoundError("NOT_FOUND")
        self.deleted.append(job.id)

    def release_count(self, job):
        if self.fail_stats:
            raise ConnectionResetError("stats unavailable")
        return self.releases.get(job.id, 0)


class FakeStore:
    """Fragment store keyed by log id."""

    def __init__(self):
        self.fragments: dict[str, LogFragments] = {}
        self.deleted: list[str] = []
        self.fail_delete = False

    def ping(self):
        pass

    def close(self):
        pass

    def fetch(self, log_id):
        return self.fragments.get(log_id, LogFragments())

    def delete_many(self, log_ids):
        if self.fail_delete:
            raise RedisConnectionError("redis down")
        for log_id in log_ids:
            self.fragments.pop(log_id, None)
            self.deleted.append(log_id)


class FakeIndex:
    """Document store keyed by (index, id) so writes overwrite."""

    def __init__(self, prefix: str = "api-logs"):
        self.documents: dict[tuple, dict] = {}
        self.bulk_calls = 0
        self.fail = False
        self.reject_ids: set = set()
        self._naming = SearchIndex(MagicMock(), prefix)

    def ping(self):
        pass

    def close(self):
        pass

    def index_name(self, record):
        return self._naming.index_name(record)

    def bulk_index(self, items):
        self.bulk_calls += 1
        if self.fail:
            raise OpenSearchConnectionError("N/A", "cluster unreachable", None)
        for item in items:
            if item.log_id in self.reject_ids:
                continue
            self.documents[(self.index_name(item.record), item.log_id)] = item.record
        return {item.log_id for item in items if item.log_id in self.reject_ids}


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def destroyer():
    return FakeBroker()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def index():
    return FakeIndex()


@pytest.fixture
def config():
    return WorkerConfig(batch_size=3, flush_interval=60.0, high_water_mark=5,
                        backpressure_poll=0.05)


@pytest.fixture
def worker(config, broker, destroyer, store, index):
    shutdown = threading.Event()
    connections = Connections(
        reserver=broker, destroyer=destroyer, store=store, index=index
    )
    w = Worker(config, connections, shutdown)
    w.start()
    yield w
    shutdown.set()
    w.buffer.stop()


@pytest.fixture
def make_edge():
    """Factory for a complete edge fragment; keyword args override fields."""

    def _make(**overrides) -> dict:
        edge = {
            "req_method": "GET",
            "req_host": "a.example",
            "req_uri": "/x",
            "req_scheme": "https",
            "req_ip": "203.0.113.7",
            "req_at_msec": 1000,
            "res_time": 0.2,
            "res_status": 200,
            "res_size": 512,
        }
        edge.update(overrides)
        return edge

    return _make
