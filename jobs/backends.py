"""Build the status store and work queue selected by configuration."""
from __future__ import annotations

from typing import Optional, Tuple

import redis

from config import JOB_BACKEND, JOB_STATUS_TTL_S, REDIS_QUEUE_NAME, REDIS_URL
from observability.logger import get_logger

from .store import InMemoryStatusStore, RedisStatusStore, StatusStore
from .work_queue import InMemoryWorkQueue, RedisWorkQueue, WorkQueue

LOGGER = get_logger("bip353.jobs.backends")


def create_backends(
    backend: str = JOB_BACKEND,
    *,
    redis_url: str = REDIS_URL,
    queue_name: str = REDIS_QUEUE_NAME,
    ttl_seconds: int = JOB_STATUS_TTL_S,
    client: Optional[redis.Redis] = None,
) -> Tuple[StatusStore, WorkQueue]:
    if backend == "memory":
        LOGGER.info("job_backend_selected", extra={"backend": backend})
        return InMemoryStatusStore(ttl_seconds=ttl_seconds), InMemoryWorkQueue()
    if backend != "redis":
        raise ValueError(f"Unknown job backend: {backend!r}")

    if client is None:
        client = redis.from_url(redis_url, decode_responses=True)
    LOGGER.info("job_backend_selected", extra={"backend": backend, "queue": queue_name})
    return RedisStatusStore(client, ttl_seconds=ttl_seconds), RedisWorkQueue(client, name=queue_name)


__all__ = ["create_backends"]
