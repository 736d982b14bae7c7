"""Producer side of the pipeline: create a job, record it, queue it."""
from __future__ import annotations

import uuid
from typing import Optional

from observability.logger import get_logger
from observability.metrics import get_registry

from .exceptions import InfrastructureError
from .models import Job, JobPayload
from .store import StatusStore
from .work_queue import WorkQueue

LOGGER = get_logger("bip353.jobs.producer")
REGISTRY = get_registry()
ENQUEUED_COUNTER = REGISTRY.counter("jobs.enqueued_total")
QUEUE_GAUGE = REGISTRY.gauge("jobs.queue_length")


class Producer:
    def __init__(self, store: StatusStore, work_queue: WorkQueue, *, ttl_seconds: Optional[int] = None) -> None:
        self._store = store
        self._queue = work_queue
        self._ttl_seconds = ttl_seconds

    def enqueue(self, payload: JobPayload) -> str:
        """Register a new job and return its id without waiting for processing.

        Only the status write and the push decide the outcome. Once both have
        happened the job will run, so later bookkeeping must not raise.
        """

        job = Job(id=str(uuid.uuid4()), payload=payload)
        # Status first: a caller polling right after we return must find the job.
        self._store.put(job.id, job, ttl=self._ttl_seconds)
        self._queue.push(job)
        ENQUEUED_COUNTER.inc()
        self._update_queue_gauge(job.id)
        LOGGER.info(
            "job_enqueued",
            extra={"job_id": job.id, "username": payload.username, "bip353_address": payload.bip353_address},
        )
        return job.id

    def _update_queue_gauge(self, job_id: str) -> None:
        try:
            QUEUE_GAUGE.set(float(len(self._queue)))
        except InfrastructureError as exc:
            LOGGER.warning("queue_length_unavailable", extra={"job_id": job_id, "error": str(exc)})


__all__ = ["Producer"]
