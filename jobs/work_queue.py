"""Work queues carrying full job snapshots from producer to worker."""
from __future__ import annotations

import json
import queue
import threading
from typing import Optional

import redis

from observability.logger import get_logger

from .exceptions import QueueUnavailableError
from .models import Job

LOGGER = get_logger("bip353.jobs.queue")

_WAKE = object()


class WorkQueue:
    """FIFO of pending jobs with blocking pop.

    ``pop(timeout=None)`` waits until an item arrives. With a timeout it gives
    up after that many seconds and returns ``None``. ``interrupt()`` makes one
    blocked (or the next) ``pop`` return ``None`` early.
    """

    def push(self, job: Job) -> None:
        raise NotImplementedError

    def pop(self, timeout: Optional[float] = None) -> Optional[Job]:
        raise NotImplementedError

    def interrupt(self) -> None:
        """Wake a consumer blocked in ``pop``."""

    def __len__(self) -> int:
        raise NotImplementedError


class InMemoryWorkQueue(WorkQueue):
    """Queue for single-process deployments and tests."""

    def __init__(self) -> None:
        self._items: "queue.Queue[object]" = queue.Queue()
        self._pending_wakeups = 0
        self._lock = threading.Lock()

    def push(self, job: Job) -> None:
        self._items.put(job)

    def pop(self, timeout: Optional[float] = None) -> Optional[Job]:
        try:
            item = self._items.get(block=True, timeout=timeout)
        except queue.Empty:
            return None
        if item is _WAKE:
            with self._lock:
                self._pending_wakeups -= 1
            return None
        return item  # type: ignore[return-value]

    def interrupt(self) -> None:
        with self._lock:
            self._pending_wakeups += 1
        self._items.put(_WAKE)

    def __len__(self) -> int:
        with self._lock:
            return max(0, self._items.qsize() - self._pending_wakeups)


class RedisWorkQueue(WorkQueue):
    """Redis list used as a queue: LPUSH at the tail, BRPOP from the head.

    A second list, ``<name>:wake``, only ever holds wake tokens. BRPOP watches
    both so ``interrupt`` can end an indefinite block without touching jobs.
    """

    WAKE_TOKEN_TTL_S = 5

    def __init__(self, client: redis.Redis, *, name: str = "bip353_jobs") -> None:
        self._client = client
        self._name = name
        self._wake_key = f"{name}:wake"

    @classmethod
    def from_url(cls, redis_url: str, *, name: str = "bip353_jobs") -> "RedisWorkQueue":
        return cls(redis.from_url(redis_url, decode_responses=True), name=name)

    @property
    def name(self) -> str:
        return self._name

    def push(self, job: Job) -> None:
        serialized = json.dumps(job.to_dict(), ensure_ascii=False)
        try:
            self._client.lpush(self._name, serialized)
        except redis.RedisError as exc:
            raise QueueUnavailableError(f"Failed to push job {job.id}: {exc}") from exc

    def pop(self, timeout: Optional[float] = None) -> Optional[Job]:
        # BRPOP treats 0 as "block forever".
        block_for = 0 if timeout is None else max(1, int(round(timeout)))
        try:
            item = self._client.brpop([self._name, self._wake_key], timeout=block_for)
        except redis.RedisError as exc:
            raise QueueUnavailableError(f"Failed to pop from {self._name}: {exc}") from exc
        if item is None:
            return None
        key, raw = item
        if key == self._wake_key:
            return None
        try:
            return Job.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            LOGGER.error("queue_item_corrupt", extra={"queue": self._name, "error": str(exc)})
            return None

    def interrupt(self) -> None:
        try:
            pipe = self._client.pipeline()
            pipe.rpush(self._wake_key, "1")
            pipe.expire(self._wake_key, self.WAKE_TOKEN_TTL_S)
            pipe.execute()
        except redis.RedisError as exc:
            raise QueueUnavailableError(f"Failed to wake consumers of {self._name}: {exc}") from exc

    def __len__(self) -> int:
        try:
            return int(self._client.llen(self._name))
        except redis.RedisError as exc:
            raise QueueUnavailableError(f"Failed to read length of {self._name}: {exc}") from exc

    def close(self) -> None:
        self._client.close()


__all__ = ["WorkQueue", "InMemoryWorkQueue", "RedisWorkQueue"]
