"""Asynchronous job pipeline for BIP353 name registrations."""

from .backends import create_backends  # noqa: F401
from .exceptions import (  # noqa: F401
    InfrastructureError,
    InvalidTransitionError,
    QueueUnavailableError,
    StoreUnavailableError,
)
from .executor import ExecutionFailure, ExecutionSuccess, Executor  # noqa: F401
from .models import Job, JobError, JobPayload, JobResult, JobStatus, build_payload  # noqa: F401
from .producer import Producer  # noqa: F401
from .store import InMemoryStatusStore, RedisStatusStore, StatusStore  # noqa: F401
from .work_queue import InMemoryWorkQueue, RedisWorkQueue, WorkQueue  # noqa: F401
from .worker import JobWorker, RetryPolicy  # noqa: F401
