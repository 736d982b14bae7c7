from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import timedelta

import pytest

from jobs.exceptions import InvalidTransitionError
from jobs.models import (
    MAX_RETRIES_EXCEEDED,
    Job,
    JobError,
    JobResult,
    JobStatus,
    build_payload,
    utcnow,
)


@pytest.fixture
def job() -> Job:
    return Job(id="job-1", payload=build_payload("alice", "lno1qcp4256ypq", "example.com"))


def test_build_payload_derives_bip353_address():
    payload = build_payload("alice", "lno1abc", "pay.example.org")
    assert payload.bip353_address == "alice@pay.example.org"


def test_new_job_starts_pending_with_equal_timestamps(job):
    assert job.status is JobStatus.PENDING
    assert job.retry_count == 0
    assert job.updated_at == job.created_at
    assert job.result is None and job.error is None


def test_happy_path_transitions(job):
    processing = job.mark_processing()
    completed = processing.mark_completed("rec-42")

    assert processing.status is JobStatus.PROCESSING
    assert completed.status is JobStatus.COMPLETED
    assert completed.result.record_id == "rec-42"
    assert completed.error is None
    assert completed.updated_at >= processing.updated_at >= job.created_at
    # Earlier snapshots are untouched.
    assert job.status is JobStatus.PENDING


def test_requeue_increments_retry_count(job):
    requeued = job.mark_processing().requeued()
    assert requeued.status is JobStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.payload == job.payload


def test_failed_job_carries_error_only(job):
    failed = job.mark_processing().mark_failed("boom", MAX_RETRIES_EXCEEDED)
    assert failed.status is JobStatus.FAILED
    assert failed.error.code == MAX_RETRIES_EXCEEDED
    assert failed.error.message == "boom"
    assert failed.result is None


@pytest.mark.parametrize("terminal", ["completed", "failed"])
def test_terminal_jobs_reject_every_transition(job, terminal):
    processing = job.mark_processing()
    done = processing.mark_completed("rec") if terminal == "completed" else processing.mark_failed("x", "CODE")
    assert done.is_terminal
    with pytest.raises(InvalidTransitionError):
        done.mark_processing()
    with pytest.raises(InvalidTransitionError):
        done.requeued()
    with pytest.raises(InvalidTransitionError):
        done.mark_failed("again", "CODE")


def test_pending_job_cannot_complete_directly(job):
    with pytest.raises(InvalidTransitionError):
        job.mark_completed("rec")


def test_snapshots_are_immutable(job):
    with pytest.raises(FrozenInstanceError):
        job.status = JobStatus.COMPLETED  # type: ignore[misc]


def test_construction_rejects_result_and_error_together(job):
    now = utcnow()
    with pytest.raises(ValueError):
        Job(
            id="bad",
            payload=job.payload,
            status=JobStatus.COMPLETED,
            result=JobResult(record_id="r", completed_at=now),
            error=JobError(message="m", code="c", occurred_at=now),
        )


def test_construction_rejects_result_outside_completed(job):
    with pytest.raises(ValueError):
        Job(
            id="bad",
            payload=job.payload,
            status=JobStatus.PROCESSING,
            result=JobResult(record_id="r", completed_at=utcnow()),
        )


def test_construction_rejects_updated_before_created(job):
    with pytest.raises(ValueError):
        Job(
            id="bad",
            payload=job.payload,
            created_at=job.created_at,
            updated_at=job.created_at - timedelta(seconds=1),
        )


def test_dict_form_restores_completed_job(job):
    completed = job.mark_processing().requeued().mark_processing().mark_completed("rec-7")
    data = completed.to_dict()

    assert data["status"] == "completed"
    assert data["retry_count"] == 1
    assert data["result"]["record_id"] == "rec-7"
    assert data["error"] is None
    assert data["created_at"].endswith("Z")
    assert Job.from_dict(data) == completed
