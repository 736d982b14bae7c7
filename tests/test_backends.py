from __future__ import annotations

import fakeredis
import pytest

from jobs.backends import create_backends
from jobs.models import JobStatus, build_payload
from jobs.producer import Producer
from jobs.store import InMemoryStatusStore, RedisStatusStore
from jobs.work_queue import InMemoryWorkQueue, RedisWorkQueue


def test_memory_backend():
    store, work_queue = create_backends("memory", ttl_seconds=30)
    assert isinstance(store, InMemoryStatusStore)
    assert isinstance(work_queue, InMemoryWorkQueue)
    assert store.ttl_seconds == 30


def test_redis_backend_shares_client_between_store_and_queue():
    client = fakeredis.FakeRedis(decode_responses=True)
    store, work_queue = create_backends("redis", queue_name="jobs_test", ttl_seconds=90, client=client)
    assert isinstance(store, RedisStatusStore)
    assert isinstance(work_queue, RedisWorkQueue)

    job_id = Producer(store, work_queue).enqueue(build_payload("hank", "lno1abc", "example.com"))

    assert store.get(job_id).status is JobStatus.PENDING
    assert client.llen("jobs_test") == 1
    assert 0 < client.ttl(f"job_status:{job_id}") <= 90


def test_unknown_backend_is_rejected():
    with pytest.raises(ValueError):
        create_backends("sqlite")
