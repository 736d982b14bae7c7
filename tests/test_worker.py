from __future__ import annotations

import time
from typing import List

import pytest

from jobs.exceptions import QueueUnavailableError, StoreUnavailableError
from jobs.executor import ExecutionFailure, ExecutionSuccess
from jobs.models import MAX_RETRIES_EXCEEDED, NON_RETRYABLE_ERROR, JobStatus, build_payload
from jobs.producer import Producer
from jobs.store import InMemoryStatusStore
from jobs.work_queue import InMemoryWorkQueue
from jobs.worker import JobWorker, RetryPolicy


class ScriptedExecutor:
    """Replays outcomes in order, repeating the last one forever."""

    def __init__(self, *outcomes):
        self._outcomes = list(outcomes)
        self.calls = []

    def execute(self, payload):
        self.calls.append(payload)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class HistoryStore(InMemoryStatusStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.history = []

    def put(self, job_id, job, ttl=None):
        self.history.append(job)
        super().put(job_id, job, ttl)


SUCCESS = ExecutionSuccess(record_id="rec-1")
TRANSIENT = ExecutionFailure("registry unavailable")


@pytest.fixture
def store() -> HistoryStore:
    return HistoryStore(ttl_seconds=3600)


@pytest.fixture
def work_queue() -> InMemoryWorkQueue:
    return InMemoryWorkQueue()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_worker(store, work_queue, sleeps):
    def _make(executor, *, max_retries=3, base_delay=1.0, **kwargs):
        return JobWorker(
            store,
            work_queue,
            executor,
            retry_policy=RetryPolicy(max_retries=max_retries, base_delay=base_delay),
            sleep=sleeps.append,
            **kwargs,
        )

    return _make


@pytest.fixture
def job_id(store, work_queue) -> str:
    return Producer(store, work_queue).enqueue(build_payload("alice", "lno1qcp", "example.com"))


def drain(worker: JobWorker) -> None:
    while worker.process_next(timeout=0) is not None:
        pass


def test_always_succeeds_goes_pending_processing_completed(make_worker, store, job_id):
    drain(make_worker(ScriptedExecutor(SUCCESS)))

    assert [job.status for job in store.history] == [
        JobStatus.PENDING,
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
    ]
    final = store.get(job_id)
    assert final.retry_count == 0
    assert final.result.record_id == "rec-1"
    assert final.error is None


def test_two_failures_then_success_completes_with_two_retries(make_worker, store, sleeps, job_id):
    executor = ScriptedExecutor(TRANSIENT, TRANSIENT, SUCCESS)
    drain(make_worker(executor, max_retries=3))

    final = store.get(job_id)
    assert final.status is JobStatus.COMPLETED
    assert final.retry_count == 2
    assert len(executor.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_always_fails_ends_failed_after_max_retries(make_worker, store, sleeps, job_id):
    executor = ScriptedExecutor(ExecutionFailure("zone locked"))
    drain(make_worker(executor, max_retries=2))

    final = store.get(job_id)
    assert final.status is JobStatus.FAILED
    assert final.error.code == MAX_RETRIES_EXCEEDED
    assert final.error.message == "zone locked"
    assert final.retry_count == 2
    assert final.result is None
    assert len(executor.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_backoff_doubles_before_each_requeue(make_worker, sleeps, job_id):
    drain(make_worker(ScriptedExecutor(TRANSIENT), max_retries=4, base_delay=1.0))
    assert sleeps == [1.0, 2.0, 4.0, 8.0]


def test_retry_count_is_monotonic_and_bounded(make_worker, store, job_id):
    drain(make_worker(ScriptedExecutor(TRANSIENT), max_retries=3))

    counts = [job.retry_count for job in store.history]
    assert counts == sorted(counts)
    assert max(counts) == 3


def test_non_retryable_failure_skips_retry_budget(make_worker, store, sleeps, job_id):
    executor = ScriptedExecutor(ExecutionFailure("invalid record", retryable=False))
    drain(make_worker(executor, max_retries=3))

    final = store.get(job_id)
    assert final.status is JobStatus.FAILED
    assert final.error.code == NON_RETRYABLE_ERROR
    assert final.retry_count == 0
    assert len(executor.calls) == 1
    assert sleeps == []


def test_executor_exception_counts_as_transient(make_worker, store, job_id):
    drain(make_worker(ScriptedExecutor(TimeoutError("read timed out"), SUCCESS)))

    final = store.get(job_id)
    assert final.status is JobStatus.COMPLETED
    assert final.retry_count == 1


def test_processing_is_visible_while_executor_runs(make_worker, store, job_id):
    seen = []

    class ObservingExecutor:
        def execute(self, payload):
            seen.append(store.get(job_id).status)
            return SUCCESS

    drain(make_worker(ObservingExecutor()))
    assert seen == [JobStatus.PROCESSING]


def test_terminal_snapshot_is_stable_under_redelivery(make_worker, store, work_queue, job_id):
    executor = ScriptedExecutor(SUCCESS)
    worker = make_worker(executor)
    pending = work_queue.pop(timeout=0)
    work_queue.push(pending)
    drain(worker)

    first = store.get(job_id)
    # At-least-once delivery: the same pending copy shows up again.
    work_queue.push(pending)
    drain(worker)

    assert store.get(job_id) == first
    assert store.get(job_id) == first
    assert len(executor.calls) == 1


class FlakyStore(HistoryStore):
    def __init__(self, failures: int, **kwargs):
        super().__init__(**kwargs)
        self._failures = failures

    def put(self, job_id, job, ttl=None):
        if job.status is JobStatus.PROCESSING and self._failures > 0:
            self._failures -= 1
            raise StoreUnavailableError("redis down")
        super().put(job_id, job, ttl)


def test_store_outage_is_retried_without_failing_the_job(work_queue, sleeps):
    store = FlakyStore(failures=2)
    job_id = Producer(store, work_queue).enqueue(build_payload("frank", "lno1abc", "example.com"))
    worker = JobWorker(
        store,
        work_queue,
        ScriptedExecutor(SUCCESS),
        retry_policy=RetryPolicy(max_retries=0, base_delay=1.0),
        infra_retry_delay=0.5,
        infra_retry_max=10.0,
        sleep=sleeps.append,
    )
    drain(worker)

    final = store.get(job_id)
    assert final.status is JobStatus.COMPLETED
    assert final.retry_count == 0
    assert sleeps == [0.5, 1.0]


def test_queue_outage_backs_off_in_loop(store, sleeps):
    class DownQueue(InMemoryWorkQueue):
        def pop(self, timeout=None):
            raise QueueUnavailableError("connection refused")

    worker = None

    def _sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            worker.stop()

    worker = JobWorker(
        store,
        DownQueue(),
        ScriptedExecutor(SUCCESS),
        infra_retry_delay=2.0,
        infra_retry_max=5.0,
        sleep=_sleep,
    )
    worker.run_forever()
    assert sleeps == [2.0, 4.0, 5.0]


def test_retry_policy_jitter_stays_within_bounds():
    policy = RetryPolicy(max_retries=3, base_delay=1.0, jitter=0.5)
    for _ in range(20):
        assert 4.0 <= policy.delay_for(2) <= 4.5
    assert policy.should_retry(2)
    assert not policy.should_retry(3)


def test_background_worker_processes_and_stops(store, work_queue):
    worker = JobWorker(
        store,
        work_queue,
        ScriptedExecutor(TRANSIENT, SUCCESS),
        retry_policy=RetryPolicy(max_retries=2, base_delay=0.0),
        poll_timeout=0.05,
    )
    worker.start()
    try:
        job_id = Producer(store, work_queue).enqueue(build_payload("gina", "lno1abc", "example.com"))
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not store.get(job_id).is_terminal:
            time.sleep(0.01)
    finally:
        worker.stop(timeout=5)

    assert not worker.running
    final = store.get(job_id)
    assert final.status is JobStatus.COMPLETED
    assert final.retry_count == 1


def test_blocking_worker_is_woken_by_stop(store, work_queue):
    worker = JobWorker(store, work_queue, ScriptedExecutor(SUCCESS), poll_timeout=0)
    worker.start()
    try:
        job_id = Producer(store, work_queue).enqueue(build_payload("hana", "lno1abc", "example.com"))
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not store.get(job_id).is_terminal:
            time.sleep(0.01)
    finally:
        thread = worker._thread
        worker.stop(timeout=5)

    assert thread is not None
    assert not thread.is_alive()
    assert store.get(job_id).status is JobStatus.COMPLETED
