"""Single-consumer worker: pops jobs, runs the executor, applies retry policy."""
from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from config import (
    WORKER_INFRA_RETRY_DELAY_S,
    WORKER_INFRA_RETRY_MAX_S,
    WORKER_MAX_RETRIES,
    WORKER_POLL_TIMEOUT_S,
    WORKER_RETRY_DELAY_S,
    WORKER_RETRY_JITTER_S,
)
from observability.logger import get_logger, log_context, log_transition
from observability.metrics import get_registry

from .exceptions import InfrastructureError
from .executor import ExecutionFailure, ExecutionSuccess, Executor
from .models import MAX_RETRIES_EXCEEDED, NON_RETRYABLE_ERROR, Job
from .store import StatusStore
from .work_queue import WorkQueue

LOGGER = get_logger("bip353.jobs.worker")
REGISTRY = get_registry()
COMPLETED_COUNTER = REGISTRY.counter("jobs.completed_total")
FAILED_COUNTER = REGISTRY.counter("jobs.failed_total")
RETRIED_COUNTER = REGISTRY.counter("jobs.retried_total")
INFRA_ERROR_COUNTER = REGISTRY.counter("worker.infra_errors_total")

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_retries: int = WORKER_MAX_RETRIES
    base_delay: float = WORKER_RETRY_DELAY_S
    jitter: float = WORKER_RETRY_JITTER_S

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def delay_for(self, retry_count: int) -> float:
        delay = self.base_delay * (2 ** retry_count)
        if self.jitter > 0:
            delay += random.uniform(0.0, self.jitter)
        return delay


class JobWorker:
    """Processes one job at a time until stopped.

    Only this worker writes a job's status after the producer's initial
    write, so per-job transitions need no locking beyond the store's own
    atomic put. Backoff sleeps hold up the jobs queued behind the failing one.
    """

    def __init__(
        self,
        store: StatusStore,
        work_queue: WorkQueue,
        executor: Executor,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        status_ttl: Optional[int] = None,
        infra_retry_delay: float = WORKER_INFRA_RETRY_DELAY_S,
        infra_retry_max: float = WORKER_INFRA_RETRY_MAX_S,
        poll_timeout: float = WORKER_POLL_TIMEOUT_S,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._store = store
        self._queue = work_queue
        self._executor = executor
        self._policy = retry_policy or RetryPolicy()
        self._status_ttl = status_ttl
        self._infra_retry_delay = infra_retry_delay
        self._infra_retry_max = max(infra_retry_delay, infra_retry_max)
        # None (block until a job or a wake-up) when no positive timeout is set.
        self._poll_timeout: Optional[float] = poll_timeout if poll_timeout > 0 else None
        self._stop_event = threading.Event()
        self._sleep = sleep if sleep is not None else self._wait
        self._thread: Optional[threading.Thread] = None

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="job-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        try:
            self._queue.interrupt()
        except InfrastructureError as exc:
            LOGGER.warning("worker_wake_failed", extra={"error": str(exc)})
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_forever(self) -> None:
        LOGGER.info(
            "worker_started",
            extra={"max_retries": self._policy.max_retries, "base_delay": self._policy.base_delay},
        )
        consecutive_failures = 0
        while not self._stop_event.is_set():
            try:
                self.process_next(timeout=self._poll_timeout)
                consecutive_failures = 0
            except InfrastructureError as exc:
                INFRA_ERROR_COUNTER.inc()
                if self._stop_event.is_set():
                    break
                delay = self._infra_delay(consecutive_failures)
                consecutive_failures += 1
                LOGGER.error(
                    "worker_infrastructure_error",
                    extra={"error": str(exc), "retry_in": delay, "attempt": consecutive_failures},
                )
                self._sleep(delay)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("worker_loop_error", extra={"error": str(exc)})
                self._sleep(self._infra_retry_delay)
        LOGGER.info("worker_stopped")

    def process_next(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Pop one job and drive it to completion, failure or requeue.

        Returns the last snapshot written, or ``None`` when nothing arrived
        within ``timeout``.
        """

        job = self._queue.pop(timeout=timeout)
        if job is None:
            return None
        return self.process(job)

    def process(self, job: Job) -> Job:
        with log_context(job_id=job.id):
            return self._process(job)

    def _process(self, job: Job) -> Job:
        current = self._retry_infrastructure("read_status", lambda: self._store.get(job.id))
        if current is not None and current.is_terminal:
            LOGGER.warning(
                "job_already_terminal",
                extra={"job_id": job.id, "status": current.status.value},
            )
            return current

        processing = job.mark_processing()
        self._write(processing)

        try:
            outcome = self._executor.execute(processing.payload)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "executor_raised",
                extra={"job_id": job.id, "error_type": type(exc).__name__, "error": str(exc)},
            )
            outcome = ExecutionFailure(message=str(exc) or type(exc).__name__)

        if isinstance(outcome, ExecutionSuccess):
            completed = processing.mark_completed(outcome.record_id)
            self._write(completed)
            COMPLETED_COUNTER.inc()
            LOGGER.info(
                "job_completed",
                extra={
                    "job_id": job.id,
                    "record_id": outcome.record_id,
                    "bip353_address": job.payload.bip353_address,
                },
            )
            return completed
        return self._handle_failure(processing, outcome)

    def _handle_failure(self, job: Job, failure: ExecutionFailure) -> Job:
        LOGGER.error(
            "job_attempt_failed",
            extra={
                "job_id": job.id,
                "username": job.payload.username,
                "error": failure.message,
                "retryable": failure.retryable,
                "retry_count": job.retry_count,
            },
        )
        if not failure.retryable:
            return self._fail(job, failure.message, NON_RETRYABLE_ERROR)
        if not self._policy.should_retry(job.retry_count):
            return self._fail(job, failure.message, MAX_RETRIES_EXCEEDED)

        delay = self._policy.delay_for(job.retry_count)
        LOGGER.info(
            "job_retry_scheduled",
            extra={
                "job_id": job.id,
                "attempt": job.retry_count + 1,
                "max_retries": self._policy.max_retries,
                "delay": delay,
            },
        )
        self._sleep(delay)
        requeued = job.requeued()
        self._write(requeued)
        self._retry_infrastructure("push", lambda: self._queue.push(requeued))
        RETRIED_COUNTER.inc()
        LOGGER.info("job_requeued", extra={"job_id": job.id, "retry_count": requeued.retry_count})
        return requeued

    def _fail(self, job: Job, message: str, code: str) -> Job:
        failed = job.mark_failed(message, code)
        self._write(failed)
        FAILED_COUNTER.inc()
        LOGGER.error(
            "job_failed",
            extra={
                "job_id": job.id,
                "username": job.payload.username,
                "code": code,
                "error": message,
                "retry_count": job.retry_count,
            },
        )
        return failed

    def _write(self, job: Job) -> None:
        self._retry_infrastructure("write_status", lambda: self._store.put(job.id, job, ttl=self._status_ttl))
        log_transition(LOGGER, job_id=job.id, status=job.status.value, retry_count=job.retry_count)

    def _retry_infrastructure(self, operation: str, action: Callable[[], T]) -> T:
        """Run a store or queue call, retrying outages with their own backoff.

        Gives up only when the worker is asked to stop.
        """

        attempt = 0
        while True:
            try:
                return action()
            except InfrastructureError as exc:
                INFRA_ERROR_COUNTER.inc()
                if self._stop_event.is_set():
                    raise
                delay = self._infra_delay(attempt)
                attempt += 1
                LOGGER.warning(
                    "infrastructure_retry",
                    extra={"operation": operation, "attempt": attempt, "retry_in": delay, "error": str(exc)},
                )
                self._sleep(delay)

    def _infra_delay(self, attempt: int) -> float:
        return min(self._infra_retry_delay * (2 ** attempt), self._infra_retry_max)

    def _wait(self, seconds: float) -> None:
        self._stop_event.wait(seconds)


__all__ = ["JobWorker", "RetryPolicy"]
