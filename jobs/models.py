"""Data models describing asynchronous BIP353 registration jobs."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .exceptions import InvalidTransitionError

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
NON_RETRYABLE_ERROR = "NON_RETRYABLE_ERROR"


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_timestamp(raw: str) -> datetime:
    return datetime.strptime(raw, ISO_FORMAT).replace(tzinfo=timezone.utc)


class JobStatus(str, Enum):
    """Lifecycle states for a registration job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass(frozen=True)
class JobPayload:
    """Input handed to the executor: the name to bind and the offer to publish."""

    username: str
    offer: str
    bip353_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "offer": self.offer,
            "bip353_address": self.bip353_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobPayload":
        return cls(
            username=str(data["username"]),
            offer=str(data["offer"]),
            bip353_address=str(data["bip353_address"]),
        )


def build_payload(username: str, offer: str, domain: str) -> JobPayload:
    return JobPayload(username=username, offer=offer, bip353_address=f"{username}@{domain}")


@dataclass(frozen=True)
class JobResult:
    record_id: str
    completed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"record_id": self.record_id, "completed_at": format_timestamp(self.completed_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(record_id=str(data["record_id"]), completed_at=parse_timestamp(data["completed_at"]))


@dataclass(frozen=True)
class JobError:
    message: str
    code: str
    occurred_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "occurred_at": format_timestamp(self.occurred_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobError":
        return cls(
            message=str(data["message"]),
            code=str(data["code"]),
            occurred_at=parse_timestamp(data["occurred_at"]),
        )


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a registration job.

    The status acts as a tag: ``result`` exists only for ``completed`` jobs and
    ``error`` only for ``failed`` ones. Construction rejects any other
    combination, and transitions return a new snapshot instead of mutating
    this one.
    """

    id: str
    payload: JobPayload
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    retry_count: int = 0
    result: Optional[JobResult] = None
    error: Optional[JobError] = None

    def __post_init__(self) -> None:
        if self.updated_at is None:
            object.__setattr__(self, "updated_at", self.created_at)
        if self.updated_at < self.created_at:
            raise ValueError(f"Job {self.id}: updated_at precedes created_at")
        if self.retry_count < 0:
            raise ValueError(f"Job {self.id}: retry_count must be non-negative")
        if self.status is JobStatus.COMPLETED:
            if self.result is None or self.error is not None:
                raise ValueError(f"Job {self.id}: completed jobs carry a result and no error")
        elif self.status is JobStatus.FAILED:
            if self.error is None or self.result is not None:
                raise ValueError(f"Job {self.id}: failed jobs carry an error and no result")
        elif self.result is not None or self.error is not None:
            raise ValueError(f"Job {self.id}: {self.status.value} jobs carry neither result nor error")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_processing(self) -> "Job":
        return self._transition(JobStatus.PROCESSING)

    def mark_completed(self, record_id: str) -> "Job":
        return self._transition(
            JobStatus.COMPLETED,
            result=JobResult(record_id=record_id, completed_at=utcnow()),
        )

    def mark_failed(self, message: str, code: str) -> "Job":
        return self._transition(
            JobStatus.FAILED,
            error=JobError(message=message, code=code, occurred_at=utcnow()),
        )

    def requeued(self) -> "Job":
        return self._transition(JobStatus.PENDING, retry_count=self.retry_count + 1)

    def _transition(self, target: JobStatus, **changes: Any) -> "Job":
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        # Keep updated_at monotonic even if the wall clock steps back.
        updated_at = max(utcnow(), self.updated_at)
        return replace(self, status=target, updated_at=updated_at, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "payload": self.payload.to_dict(),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "retry_count": self.retry_count,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            id=str(data["id"]),
            status=JobStatus(data["status"]),
            payload=JobPayload.from_dict(data["payload"]),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            retry_count=int(data.get("retry_count", 0)),
            result=JobResult.from_dict(data["result"]) if data.get("result") else None,
            error=JobError.from_dict(data["error"]) if data.get("error") else None,
        )


__all__ = [
    "ISO_FORMAT",
    "MAX_RETRIES_EXCEEDED",
    "NON_RETRYABLE_ERROR",
    "Job",
    "JobError",
    "JobPayload",
    "JobResult",
    "JobStatus",
    "build_payload",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
