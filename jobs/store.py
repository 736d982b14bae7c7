"""Status stores holding the latest job snapshot with TTL semantics."""
from __future__ import annotations

import json
import threading
import time
from typing import Callable, Dict, Optional

import redis

from observability.logger import get_logger

from .exceptions import StoreUnavailableError
from .models import Job

LOGGER = get_logger("bip353.jobs.store")

DEFAULT_STATUS_TTL_S = 3600


class StatusStore:
    """Key/value store mapping job id to its latest snapshot.

    Every ``put`` replaces the whole snapshot and restarts the TTL. ``get``
    returns ``None`` for ids that were never stored or have expired.
    """

    def __init__(self, *, ttl_seconds: int = DEFAULT_STATUS_TTL_S) -> None:
        self._ttl_seconds = max(1, int(ttl_seconds))

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def put(self, job_id: str, job: Job, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def _effective_ttl(self, ttl: Optional[int]) -> int:
        return self._ttl_seconds if ttl is None else max(1, int(ttl))


class InMemoryStatusStore(StatusStore):
    """Thread-safe in-memory storage for job snapshots."""

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_STATUS_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds)
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.RLock()

    def put(self, job_id: str, job: Job, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._jobs[job_id] = job
            self._expiry[job_id] = self._clock() + self._effective_ttl(ttl)
            self._purge_expired_locked()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            self._purge_expired_locked()
            return self._jobs.get(job_id)

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            self._expiry.pop(job_id, None)

    def _purge_expired_locked(self) -> None:
        now = self._clock()
        expired = [job_id for job_id, deadline in self._expiry.items() if deadline <= now]
        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._expiry.pop(job_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired_locked()
            return len(self._jobs)


class RedisStatusStore(StatusStore):
    """Redis-backed store; each snapshot is one JSON value written with SETEX."""

    KEY_PREFIX = "job_status:"

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_seconds: int = DEFAULT_STATUS_TTL_S,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds)
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str, *, ttl_seconds: int = DEFAULT_STATUS_TTL_S) -> "RedisStatusStore":
        return cls(redis.from_url(redis_url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, job_id: str) -> str:
        return f"{self.KEY_PREFIX}{job_id}"

    def put(self, job_id: str, job: Job, ttl: Optional[int] = None) -> None:
        serialized = json.dumps(job.to_dict(), ensure_ascii=False)
        try:
            self._client.setex(self._key(job_id), self._effective_ttl(ttl), serialized)
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Failed to write status for job {job_id}: {exc}") from exc

    def get(self, job_id: str) -> Optional[Job]:
        try:
            raw = self._client.get(self._key(job_id))
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"Failed to read status for job {job_id}: {exc}") from exc
        if raw is None:
            return None
        try:
            return Job.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            LOGGER.error("job_status_corrupt", extra={"job_id": job_id, "error": str(exc)})
            return None

    def close(self) -> None:
        self._client.close()


__all__ = ["StatusStore", "InMemoryStatusStore", "RedisStatusStore", "DEFAULT_STATUS_TTL_S"]
